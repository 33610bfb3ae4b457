"""ChainClient: Abstract surface of the blockchain RPC client.

The node never talks to the network directly. Everything it needs (account
reads, account and slot subscriptions, transaction broadcast and
confirmation) goes through a :class:`ChainClient` injected at construction.
Signing, connection pooling and broadcast live in the concrete client.
"""

from __future__ import annotations

import enum
import inspect
import re
from abc import ABC, abstractmethod
from typing import Any, Callable

from solders.instruction import Instruction as TransactionInstruction
from solders.pubkey import Pubkey

AccountCallback = Callable[[bytes], Any]
SlotCallback = Callable[[int], Any]

_PROGRAM_ERROR = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")

class ProgramErrorCode(enum.IntEnum):
    """Error codes returned by the aggregator program."""

    OWNER_MISMATCH = 0
    INSUFFICIENT_WITHDRAWABLE = 1
    AGGREGATOR_MISMATCH = 2
    INVALID_ROUND_ID = 3
    ORACLE_NEW_ROUND_COOLDOWN = 4
    MAX_SUBMISSIONS_REACHED = 5
    ORACLE_ALREADY_SUBMITTED = 6
    REWARDS_OVERFLOW = 7
    NO_RESOLVED_ANSWER = 8
    UNKNOWN_ERROR = 9

def parse_program_error(message: str) -> ProgramErrorCode | None:
    """Extract the program error code from a transaction error message.

    :param message: Error text, e.g. ``"... custom program error: 0x6"``.
    :returns: The error code, None if no program error is present.
        Codes outside the known range map to ``UNKNOWN_ERROR``.

    .. code-block:: python

        >>> parse_program_error("failed: custom program error: 0x6")
        <ProgramErrorCode.ORACLE_ALREADY_SUBMITTED: 6>
    """
    match = _PROGRAM_ERROR.search(message)
    if match is None:
        return None
    code = int(match.group(1), 16)
    try:
        return ProgramErrorCode(code)
    except ValueError:
        return ProgramErrorCode.UNKNOWN_ERROR

class ChainClientError(Exception):
    """Transport failure talking to the chain. Retryable."""

    pass

class TransactionError(ChainClientError):
    """A transaction failed to confirm.

    :ivar program_error: Program error code parsed from the message, if any.
    """

    def __init__(self, message: str, program_error: ProgramErrorCode | None = None) -> None:
        super().__init__(message)
        self.program_error = (
            program_error if program_error is not None else parse_program_error(message)
        )

class ProgramRejectedError(TransactionError):
    """The program rejected the transaction. Retrying cannot succeed."""

    pass

def classify_transaction_error(message: str) -> TransactionError:
    """Build the right exception for a failed transaction.

    :param message: Error text reported by the RPC node.
    :returns: ProgramRejectedError when a program error code is present,
        otherwise a plain TransactionError.
    """
    code = parse_program_error(message)
    if code is not None:
        return ProgramRejectedError(message, code)
    return TransactionError(message)


def as_program_rejection(error: ChainClientError) -> ProgramRejectedError | None:
    """Return ``error`` as a program rejection if it carries a program error code.

    Clients may report a rejected transaction as a plain
    :class:`TransactionError` (or even a :class:`ChainClientError` whose
    message holds the program log). Both are normalized here so that callers
    never retry a rejection.

    :param error: Failure raised by the chain client.
    :returns: A ProgramRejectedError, or None for transport failures.
    """
    if isinstance(error, ProgramRejectedError):
        return error
    code = getattr(error, "program_error", None)
    if code is None:
        code = parse_program_error(str(error))
    if code is None:
        return None
    return ProgramRejectedError(str(error), code)

class ChainClient(ABC):
    """Abstract base class for RPC client implementations.

    Callbacks registered with :meth:`on_account_change` and
    :meth:`on_slot_change` may be plain functions or coroutine functions.
    """

    @abstractmethod
    async def get_account_info(self, pubkey: Pubkey) -> bytes:
        """Fetch the data of one account.

        :param pubkey: Account address.
        :returns: Raw account data.
        :raises ChainClientError: If the account cannot be fetched.
        """
        pass

    async def get_multiple_accounts(self, pubkeys: list[Pubkey]) -> list[bytes]:
        """Fetch several accounts, in order.

        Clients that support batched reads should override this.

        :param pubkeys: Account addresses.
        :returns: Raw account data, one entry per key.
        """
        return [await self.get_account_info(pubkey) for pubkey in pubkeys]

    @abstractmethod
    def on_account_change(self, pubkey: Pubkey, callback: AccountCallback) -> Any:
        """Call ``callback`` with the new data whenever the account changes.

        :returns: Subscription handle (client specific).
        """
        pass

    @abstractmethod
    async def get_slot(self) -> int:
        """Return the current slot."""
        pass

    @abstractmethod
    def on_slot_change(self, callback: SlotCallback) -> Any:
        """Call ``callback`` with every new slot.

        :returns: Subscription handle (client specific).
        """
        pass

    @abstractmethod
    async def send_transaction(
        self, instructions: list[TransactionInstruction], signers: list[Any]
    ) -> str:
        """Sign and broadcast a transaction.

        :param instructions: Instructions, executed in order.
        :param signers: Signing identities (client specific).
        :returns: Transaction id.
        :raises ChainClientError: If the transaction cannot be sent.
        """
        pass

    @abstractmethod
    async def confirm_transaction(self, tx_id: str) -> None:
        """Wait until the transaction is confirmed.

        :param tx_id: Transaction id returned by :meth:`send_transaction`.
        :raises TransactionError: If the transaction failed.
        :raises ChainClientError: On transport failures.
        """
        pass

async def call_callback(callback: Callable[..., Any], *args: Any) -> None:
    """Invoke a subscription callback that may or may not be a coroutine."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
