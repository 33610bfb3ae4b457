"""AccountCodec: Fixed-layout binary encoding for aggregator program accounts.

Every account owned by the aggregator program has a layout whose size is
known up front. Fields are packed in declaration order with no padding:

    - ``u8``: booleans (0/1) and small counts
    - ``u64``: counters, amounts, slots (little-endian)
    - ``pubkey``: 32 raw bytes, no length prefix
    - ``str32``: 32-byte text field, upper-cased and space padded

Decoding a buffer shorter than the layout raises :class:`CodecError`.
Longer buffers are accepted and only the fixed prefix is read, since
accounts may be allocated with spare room.

.. code-block:: python

    >>> cfg = AggregatorConfig(description="BTC:USD", decimals=2)
    >>> data = cfg.encode()
    >>> len(data) == AggregatorConfig.LEN
    True
    >>> AggregatorConfig.decode(data) == cfg
    True
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import ClassVar, TypeVar

from solders.pubkey import Pubkey

# Capacity of a Submissions account.
MAX_ORACLES = 12

PUBKEY_LEN = 32
STR32_LEN = 32

_U8 = struct.Struct("<B")
_U64 = struct.Struct("<Q")

T = TypeVar("T", bound="AccountLayout")


class CodecError(ValueError):
    """Raised when bytes cannot be translated to or from a layout."""

    pass


def to_pubkey(value: bytes | bytearray | str | Pubkey) -> Pubkey:
    """Coerce raw bytes or a base58 string to a :class:`Pubkey`.

    .. code-block:: python

        >>> key = to_pubkey("SysvarC1ock11111111111111111111111111111111")
        >>> len(bytes(key))
        32

    :param value: 32 raw bytes, a base58 string or a key.
    :raises CodecError: If the value is not a valid 32-byte key.
    """
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, str):
        try:
            return Pubkey.from_string(value)
        except ValueError as e:
            raise CodecError(f"Invalid base58 public key {value!r}: {e}") from e
    if not isinstance(value, (bytes, bytearray)):
        raise CodecError(f"Cannot build a public key from {type(value).__name__}")
    if len(value) != PUBKEY_LEN:
        raise CodecError(f"Public key must be {PUBKEY_LEN} bytes, got {len(value)}")
    return Pubkey(bytes(value))


class ByteReader:
    """Sequential reader over a fixed-size layout.

    :ivar data: Buffer being read.
    :ivar offset: Current read position.
    """

    def __init__(self, data: bytes, size: int, name: str) -> None:
        """Check the buffer is large enough for the whole layout.

        :param data: Raw bytes.
        :param size: Fixed layout size in bytes.
        :param name: Layout name used in error messages.
        :raises CodecError: If ``data`` is shorter than ``size``.
        """
        if len(data) < size:
            raise CodecError(
                f"{name} requires {size} bytes, buffer has {len(data)}"
            )
        self.data = bytes(data)
        self.offset = 0

    def _take(self, n: int) -> bytes:
        end = self.offset + n
        if end > len(self.data):
            raise CodecError(f"Read past end of buffer at offset {self.offset}")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return _U8.unpack(self._take(1))[0]

    def u64(self) -> int:
        return _U64.unpack(self._take(8))[0]

    def bool(self) -> bool:
        value = self.u8()
        if value not in (0, 1):
            raise CodecError(f"Invalid boolean byte {value} at offset {self.offset - 1}")
        return value == 1

    def pubkey(self) -> Pubkey:
        return Pubkey(self._take(PUBKEY_LEN))

    def bytes32(self) -> bytes:
        return self._take(32)

    def str32(self) -> str:
        raw = self._take(STR32_LEN).rstrip(b" \x00")
        # A truncated multi-byte character at the end is dropped
        return raw.decode("utf-8", errors="ignore")


class ByteWriter:
    """Accumulates fields for a fixed-size layout."""

    def __init__(self) -> None:
        self._parts: list[bytes] = []

    def u8(self, value: int) -> None:
        self._pack(_U8, value, "u8")

    def u64(self, value: int) -> None:
        self._pack(_U64, value, "u64")

    def bool(self, value: bool) -> None:
        self._parts.append(b"\x01" if value else b"\x00")

    def pubkey(self, value: Pubkey) -> None:
        self._parts.append(bytes(to_pubkey(value)))

    def bytes32(self, value: bytes) -> None:
        if len(value) != 32:
            raise CodecError(f"Expected 32 bytes, got {len(value)}")
        self._parts.append(bytes(value))

    def str32(self, text: str, upper: bool = True) -> None:
        """Write a 32-byte text field.

        Text longer than 32 bytes is silently truncated.

        :param text: Text to write.
        :param upper: Upper-case the text first (description fields).
        """
        if upper:
            text = text.upper()
        raw = text.encode("utf-8")[:STR32_LEN]
        self._parts.append(raw.ljust(STR32_LEN, b" "))

    def getvalue(self) -> bytes:
        return b"".join(self._parts)

    def _pack(self, layout: struct.Struct, value: int, kind: str) -> None:
        try:
            self._parts.append(layout.pack(value))
        except struct.error as e:
            raise CodecError(f"Value {value!r} does not fit {kind}: {e}") from e


class AccountLayout:
    """Mixin giving fixed-size layouts ``encode``/``decode``.

    Subclasses define ``LEN`` and implement ``read``/``write``.
    """

    LEN: ClassVar[int] = 0

    @classmethod
    def read(cls: type[T], reader: ByteReader) -> T:
        raise NotImplementedError

    def write(self, writer: ByteWriter) -> None:
        raise NotImplementedError

    @classmethod
    def decode(cls: type[T], data: bytes) -> T:
        """Decode a layout from the start of ``data``.

        :param data: Raw account bytes.
        :returns: Decoded instance.
        :raises CodecError: If the buffer is too short or malformed.
        """
        return cls.read(ByteReader(data, cls.LEN, cls.__name__))

    def encode(self) -> bytes:
        """Encode to exactly ``LEN`` bytes."""
        writer = ByteWriter()
        self.write(writer)
        data = writer.getvalue()
        if len(data) != self.LEN:
            raise CodecError(
                f"{type(self).__name__} encoded to {len(data)} bytes, expected {self.LEN}"
            )
        return data


@dataclass
class AggregatorConfig(AccountLayout):
    """Aggregator settings, set by Initialize and Configure.

    :ivar description: Short name of the feed, e.g. ``BTC:USD``.
    :ivar decimals: Fixed-point decimals of submitted values.
    :ivar round_timeout: Slots before a round may be abandoned.
    :ivar restart_delay: Rounds an oracle waits before starting another.
    :ivar requester_restart_delay: Same as ``restart_delay`` for requesters.
    :ivar min_submissions: Submissions needed to resolve an answer.
    :ivar max_submissions: Submissions accepted per round.
    :ivar reward_amount: Token reward credited per submission.
    :ivar reward_token_account: Faucet that pays rewards.
    """

    LEN: ClassVar[int] = STR32_LEN + 1 + 8 + 1 + 1 + 1 + 1 + 8 + PUBKEY_LEN

    description: str = ""
    decimals: int = 0
    round_timeout: int = 0
    restart_delay: int = 0
    requester_restart_delay: int = 0
    min_submissions: int = 0
    max_submissions: int = 1
    reward_amount: int = 0
    reward_token_account: Pubkey = field(default_factory=Pubkey.default)

    @classmethod
    def read(cls, reader: ByteReader) -> AggregatorConfig:
        return cls(
            description=reader.str32(),
            decimals=reader.u8(),
            round_timeout=reader.u64(),
            restart_delay=reader.u8(),
            requester_restart_delay=reader.u8(),
            min_submissions=reader.u8(),
            max_submissions=reader.u8(),
            reward_amount=reader.u64(),
            reward_token_account=reader.pubkey(),
        )

    def write(self, writer: ByteWriter) -> None:
        writer.str32(self.description)
        writer.u8(self.decimals)
        writer.u64(self.round_timeout)
        writer.u8(self.restart_delay)
        writer.u8(self.requester_restart_delay)
        writer.u8(self.min_submissions)
        writer.u8(self.max_submissions)
        writer.u64(self.reward_amount)
        writer.pubkey(self.reward_token_account)


@dataclass
class Round(AccountLayout):
    """The round currently accepting submissions. Times are in slots."""

    LEN: ClassVar[int] = 24

    id: int = 0
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def read(cls, reader: ByteReader) -> Round:
        return cls(id=reader.u64(), created_at=reader.u64(), updated_at=reader.u64())

    def write(self, writer: ByteWriter) -> None:
        writer.u64(self.id)
        writer.u64(self.created_at)
        writer.u64(self.updated_at)


@dataclass
class Answer(AccountLayout):
    """The last resolved value."""

    LEN: ClassVar[int] = 32

    round_id: int = 0
    median: int = 0
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def read(cls, reader: ByteReader) -> Answer:
        return cls(
            round_id=reader.u64(),
            median=reader.u64(),
            created_at=reader.u64(),
            updated_at=reader.u64(),
        )

    def write(self, writer: ByteWriter) -> None:
        writer.u64(self.round_id)
        writer.u64(self.median)
        writer.u64(self.created_at)
        writer.u64(self.updated_at)


@dataclass
class Aggregator(AccountLayout):
    """Aggregator account.

    :ivar round_submissions: Submissions account of the current round.
    :ivar answer_submissions: Submissions account behind the answer.
    """

    LEN: ClassVar[int] = (
        AggregatorConfig.LEN + 1 + PUBKEY_LEN + Round.LEN + PUBKEY_LEN + Answer.LEN + PUBKEY_LEN
    )

    config: AggregatorConfig = field(default_factory=AggregatorConfig)
    is_initialized: bool = False
    owner: Pubkey = field(default_factory=Pubkey.default)
    round: Round = field(default_factory=Round)
    round_submissions: Pubkey = field(default_factory=Pubkey.default)
    answer: Answer = field(default_factory=Answer)
    answer_submissions: Pubkey = field(default_factory=Pubkey.default)

    @classmethod
    def read(cls, reader: ByteReader) -> Aggregator:
        return cls(
            config=AggregatorConfig.read(reader),
            is_initialized=reader.bool(),
            owner=reader.pubkey(),
            round=Round.read(reader),
            round_submissions=reader.pubkey(),
            answer=Answer.read(reader),
            answer_submissions=reader.pubkey(),
        )

    def write(self, writer: ByteWriter) -> None:
        self.config.write(writer)
        writer.bool(self.is_initialized)
        writer.pubkey(self.owner)
        self.round.write(writer)
        writer.pubkey(self.round_submissions)
        self.answer.write(writer)
        writer.pubkey(self.answer_submissions)


@dataclass
class Submission(AccountLayout):
    """One oracle's value in a round. Empty when ``updated_at == 0``."""

    LEN: ClassVar[int] = 8 + 8 + PUBKEY_LEN

    updated_at: int = 0
    value: int = 0
    oracle: Pubkey = field(default_factory=Pubkey.default)

    @property
    def is_empty(self) -> bool:
        return self.updated_at == 0

    @classmethod
    def read(cls, reader: ByteReader) -> Submission:
        return cls(updated_at=reader.u64(), value=reader.u64(), oracle=reader.pubkey())

    def write(self, writer: ByteWriter) -> None:
        writer.u64(self.updated_at)
        writer.u64(self.value)
        writer.pubkey(self.oracle)


def _empty_submissions() -> list[Submission]:
    return [Submission() for _ in range(MAX_ORACLES)]


@dataclass
class Submissions(AccountLayout):
    """Fixed table of ``MAX_ORACLES`` submission slots.

    Slots are keyed by oracle, not ordered: an oracle holds at most one
    non-empty slot.
    """

    LEN: ClassVar[int] = 1 + MAX_ORACLES * Submission.LEN

    is_initialized: bool = False
    submissions: list[Submission] = field(default_factory=_empty_submissions)

    @classmethod
    def read(cls, reader: ByteReader) -> Submissions:
        is_initialized = reader.bool()
        return cls(
            is_initialized=is_initialized,
            submissions=[Submission.read(reader) for _ in range(MAX_ORACLES)],
        )

    def write(self, writer: ByteWriter) -> None:
        if len(self.submissions) != MAX_ORACLES:
            raise CodecError(
                f"Submissions must have {MAX_ORACLES} slots, got {len(self.submissions)}"
            )
        writer.bool(self.is_initialized)
        for submission in self.submissions:
            submission.write(writer)

    def filled(self) -> list[Submission]:
        """Return the non-empty slots."""
        return [s for s in self.submissions if not s.is_empty]

    def has_submitted(self, oracle: Pubkey) -> bool:
        """Check whether ``oracle`` already holds a non-empty slot."""
        return any(s.oracle == oracle for s in self.filled())

    def can_submit(self, oracle: Pubkey, config: AggregatorConfig) -> bool:
        """Check whether ``oracle`` may still submit to this round.

        :param oracle: Oracle account key.
        :param config: Aggregator config providing ``max_submissions``.
        :returns: False if the oracle already submitted or the round is full.
        """
        if self.has_submitted(oracle):
            return False
        return len(self.filled()) < min(config.max_submissions, MAX_ORACLES)


@dataclass
class Oracle(AccountLayout):
    """Oracle account.

    :ivar withdrawable: Accumulated rewards not yet withdrawn.
    :ivar allow_start_round: First round id this oracle may start.
    :ivar submission: The oracle's last submission.
    """

    LEN: ClassVar[int] = STR32_LEN + 1 + 8 + 8 + PUBKEY_LEN + PUBKEY_LEN + Submission.LEN

    description: str = ""
    is_initialized: bool = False
    withdrawable: int = 0
    allow_start_round: int = 0
    aggregator: Pubkey = field(default_factory=Pubkey.default)
    owner: Pubkey = field(default_factory=Pubkey.default)
    submission: Submission = field(default_factory=Submission)

    def can_start_new_round(self, round_id: int) -> bool:
        """Check whether the start-round cooldown has elapsed at ``round_id``."""
        return self.allow_start_round <= round_id

    @classmethod
    def read(cls, reader: ByteReader) -> Oracle:
        return cls(
            description=reader.str32(),
            is_initialized=reader.bool(),
            withdrawable=reader.u64(),
            allow_start_round=reader.u64(),
            aggregator=reader.pubkey(),
            owner=reader.pubkey(),
            submission=Submission.read(reader),
        )

    def write(self, writer: ByteWriter) -> None:
        writer.str32(self.description)
        writer.bool(self.is_initialized)
        writer.u64(self.withdrawable)
        writer.u64(self.allow_start_round)
        writer.pubkey(self.aggregator)
        writer.pubkey(self.owner)
        self.submission.write(writer)


@dataclass
class Requester(AccountLayout):
    """Requester account: may request rounds but not submit values."""

    LEN: ClassVar[int] = STR32_LEN + 1 + 8 + PUBKEY_LEN + PUBKEY_LEN

    description: str = ""
    is_initialized: bool = False
    allow_start_round: int = 0
    aggregator: Pubkey = field(default_factory=Pubkey.default)
    owner: Pubkey = field(default_factory=Pubkey.default)

    def can_start_new_round(self, round_id: int) -> bool:
        return self.allow_start_round <= round_id

    @classmethod
    def read(cls, reader: ByteReader) -> Requester:
        return cls(
            description=reader.str32(),
            is_initialized=reader.bool(),
            allow_start_round=reader.u64(),
            aggregator=reader.pubkey(),
            owner=reader.pubkey(),
        )

    def write(self, writer: ByteWriter) -> None:
        writer.str32(self.description)
        writer.bool(self.is_initialized)
        writer.u64(self.allow_start_round)
        writer.pubkey(self.aggregator)
        writer.pubkey(self.owner)
