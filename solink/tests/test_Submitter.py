"""Unit tests for Submitter."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from solink.src.AccountCodec import CodecError
from solink.src.ChainClient import ChainClientError, TransactionError, classify_transaction_error
from solink.src.ErrorNotifier import ErrorNotifier
from solink.src.FluxAggregator import FluxAggregator
from solink.src.Instructions import Submit
from solink.src.RelayAdapter import RelayAdapter, RelayError
from solink.src.Submitter import MAX_ROUND_STALENESS, Submitter, SubmitterConfig, SubmitterState

from conftest import (
    AGGREGATOR_PK,
    ORACLE_PK,
    OTHER_ORACLE_PK,
    OWNER_PK,
    PROGRAM_ID,
    ROUND_SUBMISSIONS_PK,
    make_aggregator,
    make_oracle,
    make_price,
    make_submissions,
)


@pytest.fixture
def notifier() -> Mock:
    return Mock(spec=ErrorNotifier)


def make_submitter(chain, notifier, relay=None, **config) -> Submitter:
    config.setdefault("submit_retries", 0)
    config.setdefault("submit_retry_delay", 0)
    return Submitter(
        program=FluxAggregator(chain, PROGRAM_ID),
        aggregator_pk=AGGREGATOR_PK,
        oracle_pk=ORACLE_PK,
        oracle_owner=OWNER_PK,
        signer="wallet",
        price_feed=Mock(),
        config=SubmitterConfig(pair="btc:usd", **config),
        get_slot=lambda: chain.slot,
        notifier=notifier,
        relay=relay,
    )


async def started(chain, notifier, **kwargs) -> Submitter:
    submitter = make_submitter(chain, notifier, **kwargs)
    await submitter.start()
    return submitter


class TestStart:
    """Test loading state and subscribing."""

    async def test_start_loads_state(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=3))
        submitter = await started(chain, notifier)

        assert submitter.state is SubmitterState.TRACKING
        assert submitter.aggregator.round.id == 3
        assert submitter.oracle.owner == OWNER_PK
        assert submitter.round_submissions.filled() == []
        assert chain.account_callbacks[AGGREGATOR_PK] == [submitter.on_aggregator_change]

    async def test_start_fails_without_accounts(self, chain, notifier) -> None:
        submitter = make_submitter(chain, notifier)
        with pytest.raises(ChainClientError):
            await submitter.start()
        assert submitter.state is SubmitterState.IDLE

    async def test_start_retries_rpc_failure(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=2))
        read_account = chain.get_account_info
        failures = [ChainClientError("connection reset"), ChainClientError("timed out")]

        async def flaky(pubkey):
            if failures:
                raise failures.pop(0)
            return await read_account(pubkey)

        chain.get_account_info = flaky
        submitter = make_submitter(chain, notifier, start_retries=2, start_retry_delay=0)

        await submitter.start_with_retries()

        assert submitter.state is SubmitterState.TRACKING
        assert submitter.aggregator.round.id == 2
        assert chain.account_callbacks[AGGREGATOR_PK] == [submitter.on_aggregator_change]

    async def test_start_gives_up_after_retries(self, chain, notifier) -> None:
        submitter = make_submitter(chain, notifier, start_retries=2, start_retry_delay=0)

        with pytest.raises(ChainClientError):
            await submitter.start_with_retries()
        assert chain.reads == 3
        assert submitter.state is SubmitterState.IDLE

    async def test_undecodable_state_not_retried(self, chain, notifier) -> None:
        chain.accounts[AGGREGATOR_PK] = b"\x00" * 10
        submitter = make_submitter(chain, notifier, start_retries=2, start_retry_delay=0)

        with pytest.raises(CodecError):
            await submitter.start_with_retries()
        assert chain.reads == 1

    async def test_price_dropped_before_start(self, chain, notifier) -> None:
        chain.install(make_aggregator())
        submitter = make_submitter(chain, notifier)

        await submitter.on_price(make_price(10000))
        assert submitter.current_value == 0
        assert chain.sent == []


class TestSubmitToCurrentRound:
    """Test submissions to the open round."""

    async def test_submits_when_slot_free(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)

        await submitter.on_price(make_price(10000))

        assert chain.submitted() == [Submit(round_id=1, value=10000)]
        assert submitter.reported_round == 1

    async def test_small_change_skipped(self, chain, notifier) -> None:
        chain.install(make_aggregator(median=10000))
        submitter = await started(chain, notifier, min_value_change=100)

        await submitter.on_price(make_price(10100))
        assert chain.sent == []
        assert submitter.current_value == 10100

        await submitter.on_price(make_price(10101))
        assert chain.submitted() == [Submit(round_id=1, value=10101)]

    async def test_full_round_not_submitted(self, chain, notifier) -> None:
        chain.install(
            make_aggregator(max_submissions=1),
            round_submissions=make_submissions(OTHER_ORACLE_PK),
        )
        chain.slot = 101
        submitter = await started(chain, notifier)

        await submitter.on_price(make_price(10000))
        assert chain.sent == []

    async def test_each_round_submitted_once(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)

        await submitter.on_price(make_price(10000))
        await submitter.on_price(make_price(10500))

        assert len(chain.sent) == 1

    async def test_concurrent_events_submit_once(self, chain, notifier) -> None:
        """Interleaved price events cannot race two submissions into one round."""
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)

        await asyncio.gather(
            submitter.on_price(make_price(10000)),
            submitter.on_price(make_price(10001)),
            submitter.on_price(make_price(10002)),
        )

        assert len(chain.submitted()) == 1
        assert submitter.reported_round == 1

    async def test_zero_value_never_submitted(self, chain, notifier) -> None:
        chain.install(make_aggregator(median=100))
        submitter = await started(chain, notifier)

        await submitter.on_price(make_price(0))
        assert submitter.current_value == 0
        assert chain.sent == []
        assert await submitter.submit_current_value(1) is None

    async def test_decimals_mismatch(self, chain, notifier) -> None:
        chain.install(make_aggregator(decimals=2))
        submitter = await started(chain, notifier)

        await submitter.on_price(make_price(1000000, decimals=4))

        assert chain.sent == []
        assert submitter.current_value == 0
        notifier.notify_critical.assert_called_once()
        assert notifier.notify_critical.call_args.args[0] == "decimals_mismatch"

    async def test_state_refresh_failure_skips(self, chain, notifier) -> None:
        chain.install(make_aggregator())
        submitter = await started(chain, notifier)
        del chain.accounts[ORACLE_PK]

        await submitter.on_price(make_price(10000))
        assert chain.sent == []
        assert submitter.reported_round == 0


class TestStartNewRound:
    """Test starting a new round when the current one is done."""

    async def test_already_submitted_and_fresh(self, chain, notifier) -> None:
        """Our slot is filled and the round was just updated: do nothing."""
        chain.install(
            make_aggregator(round_id=5, round_updated_at=100),
            round_submissions=make_submissions(ORACLE_PK),
        )
        chain.slot = 101
        submitter = await started(chain, notifier)
        submitter.reported_round = 5

        await submitter.on_price(make_price(10000))
        assert chain.sent == []

    async def test_staleness_threshold(self, chain, notifier) -> None:
        """A new round may start only after MAX_ROUND_STALENESS slots."""
        chain.install(
            make_aggregator(round_id=5, round_updated_at=100),
            round_submissions=make_submissions(ORACLE_PK),
        )
        submitter = await started(chain, notifier)
        submitter.reported_round = 5

        chain.slot = 100 + MAX_ROUND_STALENESS - 1
        await submitter.on_price(make_price(10000))
        assert chain.sent == []

        chain.slot = 100 + MAX_ROUND_STALENESS
        await submitter.on_price(make_price(10001))
        assert chain.submitted() == [Submit(round_id=6, value=10001)]
        assert submitter.reported_round == 6

    async def test_cooldown_blocks_new_round(self, chain, notifier) -> None:
        chain.install(
            make_aggregator(round_id=5, round_updated_at=100),
            oracle=make_oracle(allow_start_round=6),
            round_submissions=make_submissions(ORACLE_PK),
        )
        chain.slot = 200
        submitter = await started(chain, notifier)
        submitter.reported_round = 5

        await submitter.on_price(make_price(10000))
        assert chain.sent == []


class TestSubmitFailures:
    """Test retry, rollback and alerting."""

    async def test_retry_then_success(self, chain, notifier) -> None:
        chain.install(make_aggregator())
        chain.send_errors.append(ChainClientError("node unavailable"))
        submitter = await started(chain, notifier, submit_retries=3)

        await submitter.on_price(make_price(10000))

        assert chain.submitted() == [Submit(round_id=1, value=10000)]
        assert submitter.reported_round == 1
        notifier.notify_critical.assert_not_called()

    async def test_exhausted_retries_roll_back(self, chain, notifier) -> None:
        """A failed confirmation restores the reported round and alerts."""
        chain.install(make_aggregator(round_id=1))
        error = TransactionError("confirmation timed out")
        chain.confirm_errors.append(error)
        submitter = await started(chain, notifier)

        assert await submitter.submit_current_value(1) is None  # no value yet
        submitter.current_value = 10000
        assert await submitter.submit_current_value(1) is None

        assert submitter.reported_round == 0
        notifier.notify_critical.assert_called_once()
        call = notifier.notify_critical.call_args
        assert call.args[0] == "submit_failed"
        assert "round 1" in call.args[1]
        assert call.args[2] == {"pair": "btc:usd", "round": 1}
        assert call.kwargs["error"] is error

    async def test_round_retried_after_rollback(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        chain.confirm_errors.append(TransactionError("confirmation timed out"))
        submitter = await started(chain, notifier)

        await submitter.on_price(make_price(10000))
        await submitter.on_price(make_price(10001))

        assert chain.submitted() == [Submit(1, 10000), Submit(1, 10001)]
        assert submitter.reported_round == 1

    async def test_already_submitted_is_soft(self, chain, notifier) -> None:
        """The program says we already submitted: keep the claim, no retry."""
        chain.install(make_aggregator(round_id=1))
        chain.confirm_errors.append(classify_transaction_error("custom program error: 0x6"))
        submitter = await started(chain, notifier, submit_retries=3)

        await submitter.on_price(make_price(10000))

        assert len(chain.sent) == 1
        assert submitter.reported_round == 1
        notifier.notify_soft.assert_called_once()
        assert notifier.notify_soft.call_args.args[0] == "oracle_already_submitted"
        notifier.notify_critical.assert_not_called()

    async def test_plain_transaction_error_with_program_code(self, chain, notifier) -> None:
        """A client reporting the rejection as a TransactionError is not retried."""
        chain.install(make_aggregator(round_id=1))
        chain.confirm_errors.extend(
            TransactionError("Transaction failed: custom program error: 0x6") for _ in range(4)
        )
        submitter = await started(chain, notifier, submit_retries=3)

        await submitter.on_price(make_price(10000))

        assert len(chain.sent) == 1
        assert submitter.reported_round == 1
        assert notifier.notify_soft.call_args.args[0] == "oracle_already_submitted"
        notifier.notify_critical.assert_not_called()

    async def test_contention_rolls_back(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        chain.confirm_errors.append(classify_transaction_error("custom program error: 0x5"))
        submitter = await started(chain, notifier, submit_retries=3)

        await submitter.on_price(make_price(10000))

        assert len(chain.sent) == 1
        assert submitter.reported_round == 0
        assert notifier.notify_soft.call_args.args[0] == "round_contention"
        notifier.notify_critical.assert_not_called()

    async def test_other_rejection_is_critical(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        chain.confirm_errors.append(classify_transaction_error("custom program error: 0x2"))
        submitter = await started(chain, notifier)

        await submitter.on_price(make_price(10000))

        assert submitter.reported_round == 0
        assert notifier.notify_critical.call_args.args[0] == "submit_rejected"

    async def test_rollback_keeps_later_claim(self, chain, notifier) -> None:
        submitter = make_submitter(chain, notifier)
        submitter.reported_round = 7

        submitter._rollback(6, previous=5)
        assert submitter.reported_round == 7


class TestAggregatorChanges:
    """Test reacting to aggregator account updates."""

    async def test_new_round_by_other_oracle(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)
        await submitter.on_price(make_price(10000))
        assert submitter.reported_round == 1

        await chain.push_account(AGGREGATOR_PK, make_aggregator(round_id=2).encode())
        await asyncio.gather(*submitter._tasks)

        assert chain.submitted() == [Submit(1, 10000), Submit(2, 10000)]
        assert submitter.reported_round == 2

    async def test_reported_round_ignored(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)
        await submitter.on_price(make_price(10000))

        await chain.push_account(AGGREGATOR_PK, make_aggregator(round_id=1, median=10000).encode())

        assert submitter._tasks == set()
        assert submitter.aggregator.answer.median == 10000
        assert len(chain.sent) == 1

    async def test_full_new_round_not_submitted(self, chain, notifier) -> None:
        """A full round that was just updated is left alone."""
        chain.install(make_aggregator(round_id=1))
        chain.slot = 101
        submitter = await started(chain, notifier)
        await submitter.on_price(make_price(10000))

        chain.accounts[ROUND_SUBMISSIONS_PK] = make_submissions(OTHER_ORACLE_PK).encode()
        await chain.push_account(
            AGGREGATOR_PK, make_aggregator(round_id=2, max_submissions=1).encode()
        )
        await asyncio.gather(*submitter._tasks)

        assert len(chain.sent) == 1
        assert submitter.reported_round == 1

    async def test_stale_full_round_starts_next(self, chain, notifier) -> None:
        """A change is re-evaluated with the same rules as a price update."""
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)
        await submitter.on_price(make_price(10000))

        chain.slot = 200
        chain.accounts[ROUND_SUBMISSIONS_PK] = make_submissions(OTHER_ORACLE_PK).encode()
        await chain.push_account(
            AGGREGATOR_PK,
            make_aggregator(round_id=2, round_updated_at=100, max_submissions=1).encode(),
        )
        await asyncio.gather(*submitter._tasks)

        assert chain.submitted()[-1] == Submit(round_id=3, value=10000)
        assert submitter.reported_round == 3

    async def test_undecodable_update_dropped(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)

        await chain.push_account(AGGREGATOR_PK, b"\x00" * 10)

        assert submitter.aggregator.round.id == 1
        assert submitter._tasks == set()

    async def test_stopped_ignores_updates(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier)
        await submitter.stop()

        await chain.push_account(AGGREGATOR_PK, make_aggregator(round_id=2).encode())
        assert submitter.aggregator.round.id == 1


class TestRelayMode:
    """Test handing rounds to the job runner."""

    async def test_round_handed_to_relay(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        relay = AsyncMock(spec=RelayAdapter)
        submitter = await started(chain, notifier, relay=relay)

        await submitter.on_price(make_price(10000))

        relay.request_submit.assert_awaited_once_with(1, AGGREGATOR_PK, "btc:usd")
        assert chain.sent == []
        assert submitter.reported_round == 1

        assert await submitter.submit_requested(1) == 10000
        assert chain.submitted() == [Submit(1, 10000)]

    async def test_relay_failure_rolls_back(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        relay = AsyncMock(spec=RelayAdapter)
        relay.request_submit.side_effect = RelayError("runner down")
        submitter = await started(chain, notifier, relay=relay)

        await submitter.on_price(make_price(10000))

        assert submitter.reported_round == 0
        call = notifier.notify_critical.call_args
        assert call.args[0] == "relay_failed"
        assert call.args[2]["round"] == 1

    async def test_requested_submit_failure_rolls_back(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        relay = AsyncMock(spec=RelayAdapter)
        submitter = await started(chain, notifier, relay=relay)
        await submitter.on_price(make_price(10000))

        chain.confirm_errors.append(TransactionError("confirmation timed out"))
        assert await submitter.submit_requested(1) is None
        assert submitter.reported_round == 0

    async def test_requested_without_value(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))
        submitter = await started(chain, notifier, relay=AsyncMock(spec=RelayAdapter))

        assert await submitter.submit_requested(1) is None
        assert chain.sent == []


class TestObservePriceFeed:
    """Test consuming the median stream."""

    async def test_run_consumes_stream(self, chain, notifier) -> None:
        chain.install(make_aggregator(round_id=1))

        async def prices():
            yield make_price(10000)

        submitter = make_submitter(chain, notifier)
        submitter.price_feed = prices()
        await submitter.run()

        assert chain.submitted() == [Submit(1, 10000)]
