"""PriceFeeder: Main orchestrator of an oracle node.

Looks at every aggregator in the deployment map and, for each one where the
wallet owns an oracle, starts a submitter fed by an aggregated median of
the configured exchange feeds.

Architecture:
    - One streaming connection per exchange, shared by every pair
    - One AggregatedFeed per pair, reducing the exchanges to a median
    - One Submitter per pair, deciding when and where to submit
    - The current slot is tracked from slot-change notifications
    - In relay mode, submissions are triggered by the external job runner
      through :meth:`PriceFeeder.handle_relay_request`
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from solders.pubkey import Pubkey

from .AccountCodec import CodecError, to_pubkey
from .AggregatedFeed import AggregatedFeed
from .ChainClient import ChainClient, ChainClientError
from .ErrorNotifier import ErrorNotifier
from .FluxAggregator import FluxAggregator
from .NodeConfig import AggregatorInfo, DeployInfo, NodeConfig
from .RelayAdapter import RelayAdapter
from .Submitter import Submitter, SubmitterConfig
from .TradingPair import TradingPair
from .feeds import BaseFeed, FeedConfigError, get_available_feeds, get_feed

logger = logging.getLogger(__name__)


class PriceFeeder:
    """Runs one submitter per aggregator the wallet can act as oracle for.

    :ivar program: Aggregator program client.
    :ivar feeds: Exchange feeds by name, created on first use.
    :ivar submitters: Running submitters by aggregator address.
    :ivar slot: Latest known slot.
    """

    def __init__(
        self,
        client: ChainClient,
        deploy: DeployInfo,
        owner: Pubkey,
        signer: Any,
        config: NodeConfig | None = None,
        notifier: ErrorNotifier | None = None,
        relay: RelayAdapter | None = None,
        feeds: dict[str, BaseFeed] | None = None,
        rpc_timeout: float = 30.0,
        start_retries: int = 5,
        start_retry_delay: float = 1.0,
    ) -> None:
        """Initialize the price feeder.

        :param client: Chain RPC client.
        :param deploy: Deployment map.
        :param owner: Wallet public key that owns the oracle accounts.
        :param signer: Signing identity passed to the chain client.
        :param config: Per-pair submitter settings.
        :param notifier: Alert sink shared by all components.
        :param relay: Job runner client for relay mode.
        :param feeds: Pre-built feeds by name (tests); others come from the registry.
        :param rpc_timeout: Seconds allowed for each RPC round-trip.
        :param start_retries: Extra attempts for a submitter to load its state.
        :param start_retry_delay: Delay before the first startup retry.
        """
        self.client = client
        self.deploy = deploy
        self.owner = to_pubkey(owner)
        self.signer = signer
        self.config = config or NodeConfig()
        self.notifier = notifier or ErrorNotifier()
        self.relay = relay
        self.rpc_timeout = rpc_timeout
        self.start_retries = start_retries
        self.start_retry_delay = start_retry_delay
        self.program = FluxAggregator(client, deploy.program_id, rpc_timeout)

        self.feeds: dict[str, BaseFeed] = dict(feeds or {})
        self.aggregated_feeds: dict[str, AggregatedFeed] = {}
        self.submitters: dict[Pubkey, Submitter] = {}
        self.slot = 0

        self._tasks: list[asyncio.Task] = []

        logger.info(
            f"PriceFeeder initialized: owner={self.owner}, "
            f"aggregators={list(deploy.aggregators)}, mode={'relay' if relay else 'direct'}"
        )

    def get_slot(self) -> int:
        return self.slot

    def _on_slot_change(self, slot: int) -> None:
        self.slot = slot

    def _feed(self, name: str) -> BaseFeed:
        if name not in self.feeds:
            self.feeds[name] = get_feed(name)
        return self.feeds[name]

    def _feeds_for(self, pair: str) -> list[BaseFeed]:
        settings = self.config.submitter_for(pair)
        names = settings.sources or tuple(get_available_feeds())

        feeds = []
        for name in names:
            try:
                feeds.append(self._feed(name))
            except FeedConfigError as e:
                logger.warning(f"{pair}: {e}")
        return feeds

    async def start(self) -> int:
        """Track the slot and start a submitter per accessible aggregator.

        :returns: Number of submitters started.
        :raises ChainClientError: If the current slot cannot be read.
        """
        self.slot = await self.client.get_slot()
        self.client.on_slot_change(self._on_slot_change)

        for pair, info in self.deploy.aggregators.items():
            oracle = info.find_oracle(self.owner)
            if oracle is None:
                logger.debug(f"{pair}: wallet is not an oracle")
                continue
            await self._start_pair(pair, info, oracle.pubkey)

        for feed in self.feeds.values():
            feed.connect()

        if not self.submitters:
            logger.error("No matching aggregator to act as oracle")
        return len(self.submitters)

    async def _start_pair(self, pair: str, info: AggregatorInfo, oracle_pk: Pubkey) -> None:
        try:
            trading_pair = TradingPair.from_string(pair)
        except ValueError as e:
            logger.warning(f"{pair}: skipped: {e}")
            return

        feeds = self._feeds_for(pair)
        if not feeds:
            logger.warning(f"{pair}: no usable price feeds, skipped")
            return

        feed = AggregatedFeed(feeds, trading_pair, self.notifier)
        await feed.start()
        self.aggregated_feeds[pair] = feed

        settings = self.config.submitter_for(pair)
        submitter = Submitter(
            program=self.program,
            aggregator_pk=info.pubkey,
            oracle_pk=oracle_pk,
            oracle_owner=self.owner,
            signer=self.signer,
            price_feed=feed.medians(),
            config=SubmitterConfig(
                pair=pair,
                min_value_change=settings.min_value_change,
                rpc_timeout=self.rpc_timeout,
                start_retries=self.start_retries,
                start_retry_delay=self.start_retry_delay,
            ),
            get_slot=self.get_slot,
            notifier=self.notifier,
            relay=self.relay,
        )
        self.submitters[info.pubkey] = submitter
        self._tasks.append(
            asyncio.create_task(self._run_submitter(submitter), name=f"submitter-{pair}")
        )
        logger.info(f"{pair}: oracle {oracle_pk} started with {[f.name for f in feeds]}")

    async def _run_submitter(self, submitter: Submitter) -> None:
        try:
            await submitter.run()
        except (ChainClientError, CodecError) as e:
            self.notifier.notify_critical(
                "submitter_failed",
                f"{submitter.pair}: submitter stopped",
                {"pair": submitter.pair, "aggregator": str(submitter.aggregator_pk)},
                error=e,
            )

    async def run(self) -> None:
        """Start and run until every submitter stops."""
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop submitters, then aggregated feeds, then exchange connections."""
        for submitter in self.submitters.values():
            await submitter.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for feed in self.aggregated_feeds.values():
            await feed.close()
        for feed in self.feeds.values():
            await feed.close()

    async def handle_relay_request(
        self, aggregator: Pubkey | str, round_id: int
    ) -> int | None:
        """Perform a submission requested by the job runner.

        :param aggregator: Aggregator address from the job.
        :param round_id: Round to submit to.
        :returns: The submitted value, or None if the submission failed.
        :raises LookupError: If no submitter serves ``aggregator``.
        """
        submitter = self.submitters.get(to_pubkey(aggregator))
        if submitter is None:
            raise LookupError(f"Submitter not found for aggregator {aggregator}")
        return await submitter.submit_requested(round_id)
