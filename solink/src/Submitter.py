"""Submitter: Decides when an oracle submits, and to which round.

A submitter serves one aggregator. It consumes the median stream of an
:class:`~solink.src.AggregatedFeed.AggregatedFeed` and the aggregator's
account-change notifications, and submits the current median:

    1. to the current round, if this oracle has no submission in it yet and
       the round is not full
    2. otherwise to ``round.id + 1`` (starting a new round), if the round has
       not been updated for ``MAX_ROUND_STALENESS`` slots and this oracle's
       start-round cooldown has elapsed

A round is never submitted to twice. ``reported_round`` is claimed before
the first ``await`` of a submission and rolled back if the submission fails,
so concurrent price and account events cannot race two submissions into the
same round.

.. code-block:: python

    submitter = Submitter(
        program, aggregator_pk, oracle_pk, owner_pk, wallet,
        feed.medians(), SubmitterConfig(pair="btc:usd", min_value_change=100),
        get_slot=lambda: slot,
    )
    await submitter.run()
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Coroutine

from solders.pubkey import Pubkey

from .AccountCodec import Aggregator, CodecError, Oracle, Submissions, to_pubkey
from .ChainClient import (
    ChainClientError,
    ProgramErrorCode,
    ProgramRejectedError,
)
from .ErrorNotifier import ErrorNotifier
from .FluxAggregator import FluxAggregator
from .Price import Price
from .RelayAdapter import RelayAdapter, RelayError

logger = logging.getLogger(__name__)

# Slots without an update after which an oracle may start a new round.
MAX_ROUND_STALENESS = 10

# Upper bound on the delay between startup attempts.
MAX_START_RETRY_DELAY = 30.0

# Rejections caused by another oracle moving the round on first.
CONTENTION_ERRORS = frozenset(
    {
        ProgramErrorCode.MAX_SUBMISSIONS_REACHED,
        ProgramErrorCode.INVALID_ROUND_ID,
        ProgramErrorCode.ORACLE_NEW_ROUND_COOLDOWN,
    }
)


class SubmitterState(enum.Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    STOPPED = "stopped"


@dataclass
class SubmitterConfig:
    """Submitter tuning.

    :ivar pair: Pair name, used in logs and relay requests.
    :ivar min_value_change: Skip updates closer than this to the on-chain answer.
    :ivar submit_retries: Extra attempts after a transport failure.
    :ivar submit_retry_delay: Seconds between attempts.
    :ivar rpc_timeout: Seconds allowed for each RPC round-trip.
    :ivar start_retries: Extra attempts to load state at startup.
    :ivar start_retry_delay: Delay before the first startup retry, doubled after each.
    """

    pair: str
    min_value_change: int = 0
    submit_retries: int = 3
    submit_retry_delay: float = 1.0
    rpc_timeout: float = 30.0
    start_retries: int = 5
    start_retry_delay: float = 1.0


class Submitter:
    """Submits the median of one pair to its aggregator.

    :ivar state: IDLE until aggregator state is loaded, then TRACKING.
    :ivar current_value: Latest median value (0 until the first price).
    :ivar reported_round: Highest round claimed for submission.
    :ivar previous_round: ``reported_round`` before the latest claim.
    """

    def __init__(
        self,
        program: FluxAggregator,
        aggregator_pk: Pubkey,
        oracle_pk: Pubkey,
        oracle_owner: Pubkey,
        signer: Any,
        price_feed: AsyncIterator[Price],
        config: SubmitterConfig,
        get_slot: Callable[[], int],
        notifier: ErrorNotifier | None = None,
        relay: RelayAdapter | None = None,
    ) -> None:
        """Initialize the submitter.

        :param program: Aggregator program client.
        :param aggregator_pk: Aggregator account.
        :param oracle_pk: This node's oracle account.
        :param oracle_owner: Wallet that owns the oracle account.
        :param signer: Signing identity passed to the chain client.
        :param price_feed: Median stream for the pair.
        :param config: Submitter tuning.
        :param get_slot: Returns the latest known slot.
        :param notifier: Alert sink.
        :param relay: Job runner client; when set, rounds are handed to it.
        """
        self.program = program
        self.aggregator_pk = to_pubkey(aggregator_pk)
        self.oracle_pk = to_pubkey(oracle_pk)
        self.oracle_owner = to_pubkey(oracle_owner)
        self.signer = signer
        self.price_feed = price_feed
        self.config = config
        self.get_slot = get_slot
        self.notifier = notifier or ErrorNotifier()
        self.relay = relay

        self.state = SubmitterState.IDLE
        self.aggregator: Aggregator | None = None
        self.oracle: Oracle | None = None
        self.round_submissions: Submissions | None = None
        self.answer_submissions: Submissions | None = None

        self.current_value = 0
        self.reported_round = 0
        self.previous_round = 0

        self._tasks: set[asyncio.Task] = set()

    @property
    def pair(self) -> str:
        return self.config.pair

    async def start(self) -> None:
        """Load aggregator state and watch the aggregator account."""
        await self.update_states()
        self.program.client.on_account_change(self.aggregator_pk, self.on_aggregator_change)
        logger.info(
            f"{self.pair}: tracking aggregator {self.aggregator_pk} "
            f"(round={self.aggregator.round.id}, mode={'relay' if self.relay else 'direct'})"
        )

    async def start_with_retries(self) -> None:
        """Call :meth:`start`, retrying RPC failures with exponential backoff.

        :raises ChainClientError: If the last attempt fails.
        :raises CodecError: If an account does not decode (not retried).
        """
        attempts = self.config.start_retries + 1
        for attempt in range(attempts):
            try:
                await self.start()
                return
            except ChainClientError as e:
                if attempt + 1 >= attempts or self.state is SubmitterState.STOPPED:
                    raise
                delay = min(
                    self.config.start_retry_delay * (2 ** attempt), MAX_START_RETRY_DELAY
                )
                logger.warning(
                    f"{self.pair}: failed to load aggregator state: {e} "
                    f"(attempt {attempt + 1}/{attempts}), retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def run(self) -> None:
        """Start, then submit from the median stream until stopped."""
        await self.start_with_retries()
        await self.observe_price_feed()

    async def stop(self) -> None:
        """Stop reacting to events and let in-flight submissions finish."""
        self.state = SubmitterState.STOPPED
        close = getattr(self.price_feed, "close", None)
        if close is not None:
            close()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def update_states(self) -> None:
        """Reload oracle and submissions accounts.

        The aggregator itself is loaded once, then kept current by account
        change notifications.

        :raises ChainClientError: On RPC failures.
        :raises CodecError: If an account does not decode.
        """
        if self.aggregator is None:
            self.aggregator = await self.program.load_aggregator(self.aggregator_pk)

        oracle, round_submissions, answer_submissions = await self.program.load_accounts(
            [
                self.oracle_pk,
                self.aggregator.round_submissions,
                self.aggregator.answer_submissions,
            ]
        )
        self.oracle = Oracle.decode(oracle)
        self.round_submissions = Submissions.decode(round_submissions)
        self.answer_submissions = Submissions.decode(answer_submissions)

        if self.state is SubmitterState.IDLE:
            self.state = SubmitterState.TRACKING

    def is_round_reported(self, round_id: int) -> bool:
        return round_id != 0 and round_id <= self.reported_round

    @property
    def can_submit_to_current_round(self) -> bool:
        if self.round_submissions is None or self.aggregator is None:
            return False
        return self.round_submissions.can_submit(self.oracle_pk, self.aggregator.config)

    # Price updates

    async def observe_price_feed(self) -> None:
        async for price in self.price_feed:
            if self.state is SubmitterState.STOPPED:
                break
            await self.on_price(price)

    async def on_price(self, price: Price) -> None:
        """Handle a new median from the feed."""
        if self.state is not SubmitterState.TRACKING or self.aggregator is None:
            logger.debug(f"{self.pair}: no aggregator state yet, dropping price")
            return

        expected = self.aggregator.config.decimals
        if price.decimals != expected:
            self.notifier.notify_critical(
                "decimals_mismatch",
                f"{self.pair}: expected price with {expected} decimals, got {price.decimals}",
                {"pair": self.pair},
            )
            return

        self.current_value = price.value

        value_diff = abs(self.aggregator.answer.median - self.current_value)
        if value_diff <= self.config.min_value_change:
            logger.debug(
                f"{self.pair}: price did not change enough to start a new round (diff={value_diff})"
            )
            return

        try:
            await self.update_states()
        except (ChainClientError, CodecError) as e:
            logger.warning(f"{self.pair}: failed to refresh state: {e}")
            return

        await self.try_submit()

    # Aggregator account changes

    def on_aggregator_change(self, data: bytes) -> None:
        """Account-change callback for the aggregator account."""
        if self.state is SubmitterState.STOPPED:
            return

        try:
            aggregator = Aggregator.decode(data)
        except CodecError as e:
            logger.warning(f"{self.pair}: dropped undecodable aggregator update: {e}")
            return

        self.aggregator = aggregator
        if self.is_round_reported(aggregator.round.id):
            return

        self._spawn(self._on_aggregator_state_update())

    async def _on_aggregator_state_update(self) -> None:
        try:
            await self.update_states()
        except (ChainClientError, CodecError) as e:
            logger.warning(f"{self.pair}: failed to refresh state: {e}")
            return

        logger.debug(f"{self.pair}: aggregator moved to round {self.aggregator.round.id}")
        await self.try_submit()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Submission

    async def try_submit(self) -> int | None:
        """Submit to the current round or start a new one, if eligible.

        :returns: The submitted value, or None if nothing was submitted.
        """
        round_ = self.aggregator.round

        if self.can_submit_to_current_round:
            logger.info(f"{self.pair}: submit to current round {round_.id}")
            return await self.submit_current_value(round_.id)

        since_last_update = self.get_slot() - round_.updated_at
        if since_last_update < MAX_ROUND_STALENESS:
            return None

        if self.oracle is not None and self.oracle.can_start_new_round(round_.id):
            new_round_id = round_.id + 1
            logger.info(f"{self.pair}: starting new round {new_round_id}")
            return await self.submit_current_value(new_round_id)

        return None

    async def submit_current_value(self, round_id: int) -> int | None:
        """Submit the current value to ``round_id`` unless already reported.

        :returns: The submitted (or relayed) value, or None.
        """
        value = self.current_value
        if value == 0:
            logger.warning(f"{self.pair}: current value is zero, skip submit")
            return None

        if self.is_round_reported(round_id):
            logger.debug(f"{self.pair}: round {round_id} already reported")
            return None

        # Claim the round before the first await
        previous = self.reported_round
        self.previous_round = previous
        self.reported_round = round_id

        if self.relay is not None:
            return await self._relay(round_id, value, previous)

        if await self._submit(round_id, value, previous):
            return value
        return None

    async def submit_requested(self, round_id: int) -> int | None:
        """Submit for a round requested by the job runner.

        The round was claimed when it was handed to the relay.

        :returns: The submitted value, or None on failure.
        """
        value = self.current_value
        if value == 0 or self.aggregator is None:
            logger.warning(f"{self.pair}: no value to submit for requested round {round_id}")
            return None

        previous = self.previous_round
        if not self.is_round_reported(round_id):
            previous = self.reported_round
            self.previous_round = previous
            self.reported_round = round_id

        if await self._submit(round_id, value, previous):
            return value
        return None

    async def _relay(self, round_id: int, value: int, previous: int) -> int | None:
        try:
            await self.relay.request_submit(round_id, self.aggregator_pk, self.pair)
        except RelayError as e:
            self._rollback(round_id, previous)
            self.notifier.notify_critical(
                "relay_failed",
                f"{self.pair}: relay request for round {round_id} failed",
                {"pair": self.pair, "round": round_id},
                error=e,
            )
            return None
        return value

    async def _submit(self, round_id: int, value: int, previous: int) -> bool:
        logger.info(f"{self.pair}: submit value {value} to round {round_id}")

        attempts = self.config.submit_retries + 1
        last_error: ChainClientError | None = None
        for attempt in range(attempts):
            try:
                tx_id = await self.program.submit(
                    self.aggregator_pk,
                    self.aggregator,
                    self.oracle_pk,
                    self.oracle_owner,
                    round_id,
                    value,
                    self.signer,
                )
            except ProgramRejectedError as e:
                self._handle_rejection(round_id, previous, e)
                return False
            except ChainClientError as e:
                last_error = e
                if attempt + 1 < attempts:
                    logger.warning(
                        f"{self.pair}: submit to round {round_id} failed: {e} "
                        f"(attempt {attempt + 1}/{attempts})"
                    )
                    await asyncio.sleep(self.config.submit_retry_delay)
                continue

            logger.info(f"{self.pair}: submit OK (round={round_id}, tx={tx_id})")
            return True

        self._rollback(round_id, previous)
        self.notifier.notify_critical(
            "submit_failed",
            f"{self.pair}: failed to submit round {round_id}: {last_error}",
            {"pair": self.pair, "round": round_id},
            error=last_error,
        )
        return False

    def _handle_rejection(
        self, round_id: int, previous: int, error: ProgramRejectedError
    ) -> None:
        code = error.program_error
        metadata = {"pair": self.pair, "round": round_id, "code": code.name if code else None}

        if code is ProgramErrorCode.ORACLE_ALREADY_SUBMITTED:
            self.notifier.notify_soft(
                "oracle_already_submitted",
                f"{self.pair}: already submitted to round {round_id}",
                metadata,
            )
            return

        self._rollback(round_id, previous)
        if code in CONTENTION_ERRORS:
            self.notifier.notify_soft(
                "round_contention",
                f"{self.pair}: round {round_id} moved on before submission ({code.name})",
                metadata,
            )
            return

        self.notifier.notify_critical(
            "submit_rejected",
            f"{self.pair}: program rejected submission to round {round_id}",
            metadata,
            error=error,
        )

    def _rollback(self, round_id: int, previous: int) -> None:
        # A later round may have been claimed meanwhile; keep that claim
        if self.reported_round == round_id:
            self.reported_round = previous
            logger.debug(f"{self.pair}: reported round rolled back to {previous}")
