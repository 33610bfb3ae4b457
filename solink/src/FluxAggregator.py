"""FluxAggregator: Client for the on-chain aggregator program.

Builds instructions with the account order the program expects, sends them
through the injected :class:`~solink.src.ChainClient.ChainClient` and waits
for confirmation. Also loads and decodes program accounts.

Every RPC round-trip is bounded by ``rpc_timeout`` seconds.

.. code-block:: python

    program = FluxAggregator(client, program_id)
    aggregator = await program.load_aggregator(aggregator_pk)
    await program.submit(
        aggregator_pk, aggregator, oracle_pk, owner_pk, round_id=7, value=10000, signer=wallet
    )
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

from solders.instruction import AccountMeta
from solders.instruction import Instruction as TransactionInstruction
from solders.pubkey import Pubkey

from .AccountCodec import Aggregator, CodecError, Requester, to_pubkey
from .ChainClient import ChainClient, ChainClientError, as_program_rejection
from .Instructions import Instruction, RequestRound, Submit, Withdraw, encode_instruction

logger = logging.getLogger(__name__)

SYSVAR_CLOCK = to_pubkey("SysvarC1ock11111111111111111111111111111111")
TOKEN_PROGRAM_ID = to_pubkey("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")

DEFAULT_RPC_TIMEOUT = 30.0

T = TypeVar("T")


def writable_meta(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(to_pubkey(pubkey), is_signer=False, is_writable=True)


def readonly_meta(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(to_pubkey(pubkey), is_signer=False, is_writable=False)


def signer_meta(pubkey: Pubkey, is_writable: bool = False) -> AccountMeta:
    return AccountMeta(to_pubkey(pubkey), is_signer=True, is_writable=is_writable)


class FluxAggregator:
    """Aggregator program client.

    :ivar client: Chain RPC client.
    :ivar program_id: Address of the aggregator program.
    :ivar rpc_timeout: Seconds allowed for each RPC round-trip.
    """

    def __init__(
        self,
        client: ChainClient,
        program_id: Pubkey | str,
        rpc_timeout: float = DEFAULT_RPC_TIMEOUT,
    ) -> None:
        """Initialize the program client.

        :param client: Chain RPC client used for reads and transactions.
        :param program_id: Aggregator program address.
        :param rpc_timeout: Timeout for each RPC call in seconds.
        """
        self.client = client
        self.program_id = to_pubkey(program_id)
        self.rpc_timeout = rpc_timeout

    async def _rpc(self, call: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.rpc_timeout)
        except asyncio.TimeoutError as e:
            raise ChainClientError(f"{what} timed out after {self.rpc_timeout}s") from e

    # Account loading

    async def load_accounts(self, pubkeys: list[Pubkey]) -> list[bytes]:
        """Fetch raw data of several accounts in one call."""
        return await self._rpc(
            self.client.get_multiple_accounts(list(pubkeys)), "get_multiple_accounts"
        )

    async def _load(self, pubkey: Pubkey, layout: type[T]) -> T:
        data = await self._rpc(
            self.client.get_account_info(to_pubkey(pubkey)), "get_account_info"
        )
        try:
            return layout.decode(data)
        except CodecError as e:
            raise CodecError(f"Account {pubkey}: {e}") from e

    async def load_aggregator(self, pubkey: Pubkey) -> Aggregator:
        return await self._load(pubkey, Aggregator)

    async def load_requester(self, pubkey: Pubkey) -> Requester:
        return await self._load(pubkey, Requester)

    # Instruction builders

    def instruction(
        self, ix: Instruction, accounts: list[AccountMeta]
    ) -> TransactionInstruction:
        return TransactionInstruction(self.program_id, encode_instruction(ix), accounts)

    def submit_instruction(
        self,
        aggregator_pk: Pubkey,
        aggregator: Aggregator,
        oracle_pk: Pubkey,
        oracle_owner: Pubkey,
        round_id: int,
        value: int,
    ) -> TransactionInstruction:
        """Build a Submit instruction.

        Accounts: clock sysvar, aggregator (w), round submissions (w),
        answer submissions (w), oracle (w), oracle owner (signer).
        """
        return self.instruction(
            Submit(round_id=round_id, value=value),
            [
                readonly_meta(SYSVAR_CLOCK),
                writable_meta(aggregator_pk),
                writable_meta(aggregator.round_submissions),
                writable_meta(aggregator.answer_submissions),
                writable_meta(oracle_pk),
                signer_meta(oracle_owner),
            ],
        )

    def request_round_instruction(
        self,
        aggregator_pk: Pubkey,
        aggregator: Aggregator,
        requester_pk: Pubkey,
        requester_owner: Pubkey,
    ) -> TransactionInstruction:
        """Build a RequestRound instruction.

        Accounts: aggregator (w), round submissions (w), requester (w),
        requester owner (signer).
        """
        return self.instruction(
            RequestRound(),
            [
                writable_meta(aggregator_pk),
                writable_meta(aggregator.round_submissions),
                writable_meta(requester_pk),
                signer_meta(requester_owner),
            ],
        )

    def withdraw_instruction(
        self,
        faucet: Pubkey,
        faucet_owner: Pubkey,
        faucet_owner_seed: bytes,
        oracle_pk: Pubkey,
        oracle_owner: Pubkey,
        receiver: Pubkey,
    ) -> TransactionInstruction:
        """Build a Withdraw instruction.

        Accounts: token program, faucet (w), faucet owner, oracle (w),
        oracle owner (signer), receiver (w).
        """
        return self.instruction(
            Withdraw(faucet_owner_seed=faucet_owner_seed),
            [
                readonly_meta(TOKEN_PROGRAM_ID),
                writable_meta(faucet),
                readonly_meta(faucet_owner),
                writable_meta(oracle_pk),
                signer_meta(oracle_owner),
                writable_meta(receiver),
            ],
        )

    # Transactions

    async def send(
        self, instructions: list[TransactionInstruction], signers: list[Any]
    ) -> str:
        """Send a transaction and wait for confirmation.

        Failures that carry a program error code are raised as
        :class:`~solink.src.ChainClient.ProgramRejectedError`, whatever
        exception type the client used.

        :returns: Transaction id.
        :raises ProgramRejectedError: If the program rejected the transaction.
        :raises TransactionError: If the transaction failed to confirm.
        :raises ChainClientError: On transport failure or timeout.
        """
        try:
            tx_id = await self._rpc(
                self.client.send_transaction(instructions, signers), "send_transaction"
            )
            logger.debug(f"Sent transaction {tx_id}, awaiting confirmation")
            await self._rpc(self.client.confirm_transaction(tx_id), "confirm_transaction")
        except ChainClientError as e:
            rejection = as_program_rejection(e)
            if rejection is None or rejection is e:
                raise
            raise rejection from e
        return tx_id

    async def submit(
        self,
        aggregator_pk: Pubkey,
        aggregator: Aggregator,
        oracle_pk: Pubkey,
        oracle_owner: Pubkey,
        round_id: int,
        value: int,
        signer: Any,
    ) -> str:
        """Submit ``value`` to ``round_id`` and wait for confirmation."""
        ix = self.submit_instruction(
            aggregator_pk, aggregator, oracle_pk, oracle_owner, round_id, value
        )
        return await self.send([ix], [signer])

    async def request_round(
        self,
        aggregator_pk: Pubkey,
        aggregator: Aggregator,
        requester_pk: Pubkey,
        requester_owner: Pubkey,
        signer: Any,
    ) -> str:
        """Ask the aggregator to open a new round."""
        ix = self.request_round_instruction(
            aggregator_pk, aggregator, requester_pk, requester_owner
        )
        return await self.send([ix], [signer])

    async def withdraw(
        self,
        faucet: Pubkey,
        faucet_owner: Pubkey,
        faucet_owner_seed: bytes,
        oracle_pk: Pubkey,
        oracle_owner: Pubkey,
        receiver: Pubkey,
        signer: Any,
    ) -> str:
        """Withdraw the oracle's accumulated rewards to ``receiver``."""
        ix = self.withdraw_instruction(
            faucet, faucet_owner, faucet_owner_seed, oracle_pk, oracle_owner, receiver
        )
        return await self.send([ix], [signer])
