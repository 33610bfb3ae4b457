"""Shared test helpers: an in-memory chain client and account builders."""

from __future__ import annotations

import asyncio
import json

import pytest
from solders.pubkey import Pubkey

from solink.src.AccountCodec import (
    MAX_ORACLES,
    Aggregator,
    AggregatorConfig,
    Answer,
    Oracle,
    Round,
    Submission,
    Submissions,
    to_pubkey,
)
from solink.src.ChainClient import ChainClient, ChainClientError, call_callback
from solink.src.Instructions import decode_instruction
from solink.src.Price import Price
from solink.src.TradingPair import TradingPair
from solink.src.feeds.base import BaseFeed


def key(n: int) -> Pubkey:
    """Deterministic test key made of 32 copies of ``n``."""
    return to_pubkey(bytes([n]) * 32)


PROGRAM_ID = key(9)
AGGREGATOR_PK = key(1)
ORACLE_PK = key(2)
OWNER_PK = key(3)
ROUND_SUBMISSIONS_PK = key(4)
ANSWER_SUBMISSIONS_PK = key(5)
OTHER_ORACLE_PK = key(6)
REQUESTER_PK = key(7)

BTC_USD = TradingPair("btc", "usd")


def make_aggregator(
    round_id: int = 1,
    round_updated_at: int = 100,
    median: int = 0,
    decimals: int = 2,
    max_submissions: int = 3,
) -> Aggregator:
    return Aggregator(
        config=AggregatorConfig(
            description="btc:usd",
            decimals=decimals,
            min_submissions=1,
            max_submissions=max_submissions,
        ),
        is_initialized=True,
        owner=key(8),
        round=Round(id=round_id, created_at=round_updated_at, updated_at=round_updated_at),
        round_submissions=ROUND_SUBMISSIONS_PK,
        answer=Answer(round_id=max(round_id - 1, 0), median=median),
        answer_submissions=ANSWER_SUBMISSIONS_PK,
    )


def make_submissions(*oracles: Pubkey) -> Submissions:
    """Submissions with one filled slot per given oracle."""
    slots = [Submission(updated_at=50, value=10000, oracle=o) for o in oracles]
    slots += [Submission() for _ in range(MAX_ORACLES - len(slots))]
    return Submissions(is_initialized=True, submissions=slots)


def make_oracle(allow_start_round: int = 0) -> Oracle:
    return Oracle(
        description="solink",
        is_initialized=True,
        allow_start_round=allow_start_round,
        aggregator=AGGREGATOR_PK,
        owner=OWNER_PK,
    )


def make_price(value: int, decimals: int = 2, source: str = "median") -> Price:
    return Price(source=source, pair=BTC_USD, decimals=decimals, value=value)


class FakeChainClient(ChainClient):
    """In-memory chain client.

    ``send_errors`` and ``confirm_errors`` are raised (in order) by the next
    calls to :meth:`send_transaction` and :meth:`confirm_transaction`.
    """

    def __init__(self) -> None:
        self.accounts: dict[Pubkey, bytes] = {}
        self.slot = 0
        self.sent: list[tuple[list, list]] = []
        self.send_errors: list[Exception] = []
        self.confirm_errors: list[Exception] = []
        self.account_callbacks: dict[Pubkey, list] = {}
        self.slot_callbacks: list = []
        self.reads = 0

    async def get_account_info(self, pubkey: Pubkey) -> bytes:
        self.reads += 1
        try:
            return self.accounts[to_pubkey(pubkey)]
        except KeyError:
            raise ChainClientError(f"Account {pubkey} not found") from None

    def on_account_change(self, pubkey, callback) -> None:
        self.account_callbacks.setdefault(to_pubkey(pubkey), []).append(callback)

    async def get_slot(self) -> int:
        return self.slot

    def on_slot_change(self, callback) -> None:
        self.slot_callbacks.append(callback)

    async def send_transaction(self, instructions, signers) -> str:
        # Yield so concurrent submissions interleave
        await asyncio.sleep(0)
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((instructions, signers))
        return f"tx{len(self.sent)}"

    async def confirm_transaction(self, tx_id: str) -> None:
        await asyncio.sleep(0)
        if self.confirm_errors:
            raise self.confirm_errors.pop(0)

    def install(
        self,
        aggregator: Aggregator,
        oracle: Oracle | None = None,
        round_submissions: Submissions | None = None,
        answer_submissions: Submissions | None = None,
    ) -> None:
        """Store the accounts a submitter reads."""
        self.accounts[AGGREGATOR_PK] = aggregator.encode()
        self.accounts[ORACLE_PK] = (oracle or make_oracle()).encode()
        self.accounts[ROUND_SUBMISSIONS_PK] = (round_submissions or make_submissions()).encode()
        self.accounts[ANSWER_SUBMISSIONS_PK] = (answer_submissions or make_submissions()).encode()

    async def push_account(self, pubkey: Pubkey, data: bytes) -> None:
        """Store new account data and notify subscribers."""
        self.accounts[to_pubkey(pubkey)] = data
        for callback in self.account_callbacks.get(to_pubkey(pubkey), []):
            await call_callback(callback, data)

    async def push_slot(self, slot: int) -> None:
        self.slot = slot
        for callback in self.slot_callbacks:
            await call_callback(callback, slot)

    def submitted(self) -> list:
        """Decoded first instruction of every sent transaction."""
        return [decode_instruction(instructions[0].data) for instructions, _ in self.sent]


class StubFeed(BaseFeed):
    """Feed that never connects; messages are ``{"symbol": ..., "price": ...}``."""

    name = "stub"
    url = "wss://stub.invalid"

    def __init__(self, name: str = "stub") -> None:
        super().__init__()
        self.name = name
        self.connected = False

    def pair_symbol(self, pair: TradingPair) -> str:
        return str(pair)

    def subscribe_messages(self, pair: TradingPair) -> list[dict]:
        return [{"subscribe": self.pair_symbol(pair)}]

    def parse_message(self, raw):
        msg = json.loads(raw)
        return self.make_price(msg["symbol"], msg["price"])

    def connect(self):
        self.connected = True
        return None

    def emit(self, price: str, pair: str = "btc:usd") -> None:
        self._on_message(json.dumps({"symbol": pair, "price": price}))


class FakeWebSocket:
    """Websocket that yields canned frames and records sent ones."""

    def __init__(self, messages=()) -> None:
        self.messages = list(messages)
        self.sent: list[str] = []
        self.closed = False

    async def __aenter__(self) -> FakeWebSocket:
        return self

    async def __aexit__(self, *exc) -> bool:
        self.closed = True
        return False

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for message in self.messages:
            yield message

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()
