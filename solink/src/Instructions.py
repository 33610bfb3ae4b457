"""Instructions: Tagged union of aggregator program instructions.

Wire format is one discriminant byte followed by the variant's fields in
declaration order, using the same primitives as :mod:`AccountCodec`:

    ====  ===============  ==========================================
    tag   variant          fields
    ====  ===============  ==========================================
    0     Initialize       config: AggregatorConfig
    1     Configure        config: AggregatorConfig
    2     TransferOwner    new_owner: pubkey
    3     AddOracle        description: str32
    4     RemoveOracle     (none)
    5     AddRequester     description: str32
    6     RemoveRequester  (none)
    7     RequestRound     (none)
    8     Submit           round_id: u64, value: u64
    9     Withdraw         faucet_owner_seed: 32 bytes
    ====  ===============  ==========================================

.. code-block:: python

    >>> data = encode_instruction(Submit(round_id=5, value=10000))
    >>> data[0]
    8
    >>> decode_instruction(data)
    Submit(round_id=5, value=10000)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Union

from solders.pubkey import Pubkey

from .AccountCodec import (
    PUBKEY_LEN,
    STR32_LEN,
    AggregatorConfig,
    ByteReader,
    ByteWriter,
    CodecError,
)


@dataclass
class Initialize:
    DISCRIMINANT: ClassVar[int] = 0
    SIZE: ClassVar[int] = AggregatorConfig.LEN

    config: AggregatorConfig = field(default_factory=AggregatorConfig)

    @classmethod
    def read(cls, reader: ByteReader) -> Initialize:
        return cls(config=AggregatorConfig.read(reader))

    def write(self, writer: ByteWriter) -> None:
        self.config.write(writer)


@dataclass
class Configure:
    DISCRIMINANT: ClassVar[int] = 1
    SIZE: ClassVar[int] = AggregatorConfig.LEN

    config: AggregatorConfig = field(default_factory=AggregatorConfig)

    @classmethod
    def read(cls, reader: ByteReader) -> Configure:
        return cls(config=AggregatorConfig.read(reader))

    def write(self, writer: ByteWriter) -> None:
        self.config.write(writer)


@dataclass
class TransferOwner:
    DISCRIMINANT: ClassVar[int] = 2
    SIZE: ClassVar[int] = PUBKEY_LEN

    new_owner: Pubkey = field(default_factory=Pubkey.default)

    @classmethod
    def read(cls, reader: ByteReader) -> TransferOwner:
        return cls(new_owner=reader.pubkey())

    def write(self, writer: ByteWriter) -> None:
        writer.pubkey(self.new_owner)


@dataclass
class AddOracle:
    DISCRIMINANT: ClassVar[int] = 3
    SIZE: ClassVar[int] = STR32_LEN

    description: str = ""

    @classmethod
    def read(cls, reader: ByteReader) -> AddOracle:
        return cls(description=reader.str32())

    def write(self, writer: ByteWriter) -> None:
        writer.str32(self.description)


@dataclass
class RemoveOracle:
    DISCRIMINANT: ClassVar[int] = 4
    SIZE: ClassVar[int] = 0

    @classmethod
    def read(cls, reader: ByteReader) -> RemoveOracle:
        return cls()

    def write(self, writer: ByteWriter) -> None:
        pass


@dataclass
class AddRequester:
    DISCRIMINANT: ClassVar[int] = 5
    SIZE: ClassVar[int] = STR32_LEN

    description: str = ""

    @classmethod
    def read(cls, reader: ByteReader) -> AddRequester:
        return cls(description=reader.str32())

    def write(self, writer: ByteWriter) -> None:
        writer.str32(self.description)


@dataclass
class RemoveRequester:
    DISCRIMINANT: ClassVar[int] = 6
    SIZE: ClassVar[int] = 0

    @classmethod
    def read(cls, reader: ByteReader) -> RemoveRequester:
        return cls()

    def write(self, writer: ByteWriter) -> None:
        pass


@dataclass
class RequestRound:
    DISCRIMINANT: ClassVar[int] = 7
    SIZE: ClassVar[int] = 0

    @classmethod
    def read(cls, reader: ByteReader) -> RequestRound:
        return cls()

    def write(self, writer: ByteWriter) -> None:
        pass


@dataclass
class Submit:
    """Submit ``value`` to ``round_id``; ``round_id`` may be current id + 1."""

    DISCRIMINANT: ClassVar[int] = 8
    SIZE: ClassVar[int] = 16

    round_id: int = 0
    value: int = 0

    @classmethod
    def read(cls, reader: ByteReader) -> Submit:
        return cls(round_id=reader.u64(), value=reader.u64())

    def write(self, writer: ByteWriter) -> None:
        writer.u64(self.round_id)
        writer.u64(self.value)


@dataclass
class Withdraw:
    """Withdraw the oracle's rewards from the faucet owned by a program address."""

    DISCRIMINANT: ClassVar[int] = 9
    SIZE: ClassVar[int] = 32

    faucet_owner_seed: bytes = bytes(32)

    @classmethod
    def read(cls, reader: ByteReader) -> Withdraw:
        return cls(faucet_owner_seed=reader.bytes32())

    def write(self, writer: ByteWriter) -> None:
        writer.bytes32(self.faucet_owner_seed)


Instruction = Union[
    Initialize,
    Configure,
    TransferOwner,
    AddOracle,
    RemoveOracle,
    AddRequester,
    RemoveRequester,
    RequestRound,
    Submit,
    Withdraw,
]

INSTRUCTION_VARIANTS: dict[int, type[Instruction]] = {
    cls.DISCRIMINANT: cls
    for cls in (
        Initialize,
        Configure,
        TransferOwner,
        AddOracle,
        RemoveOracle,
        AddRequester,
        RemoveRequester,
        RequestRound,
        Submit,
        Withdraw,
    )
}


def encode_instruction(instruction: Instruction) -> bytes:
    """Encode an instruction as discriminant byte plus fields.

    :param instruction: One of the instruction variants.
    :returns: Instruction data bytes.
    :raises CodecError: If the object is not a known variant or a field
        does not fit its width.
    """
    cls = INSTRUCTION_VARIANTS.get(getattr(instruction, "DISCRIMINANT", -1))
    if cls is None or type(instruction) is not cls:
        raise CodecError(f"Not an instruction variant: {instruction!r}")

    writer = ByteWriter()
    writer.u8(cls.DISCRIMINANT)
    instruction.write(writer)
    return writer.getvalue()


def decode_instruction(data: bytes) -> Instruction:
    """Decode instruction data produced by :func:`encode_instruction`.

    :param data: Instruction data bytes.
    :returns: The decoded variant.
    :raises CodecError: If the buffer is empty, truncated or the
        discriminant is unknown.
    """
    if not data:
        raise CodecError("Instruction data is empty")

    cls = INSTRUCTION_VARIANTS.get(data[0])
    if cls is None:
        raise CodecError(f"Unknown instruction discriminant {data[0]}")

    reader = ByteReader(data[1:], cls.SIZE, cls.__name__)
    return cls.read(reader)
