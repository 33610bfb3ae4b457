"""RequestFeeder: Requests new rounds as a requester.

.. code-block:: python

    feeder = RequestFeeder(program, deploy, wallet_pubkey, wallet)
    await feeder.request_round("btc:usd")
"""

from __future__ import annotations

import logging
from typing import Any

from solders.pubkey import Pubkey

from .AccountCodec import CodecError, to_pubkey
from .ChainClient import ChainClientError
from .FluxAggregator import FluxAggregator
from .NodeConfig import DeployInfo

logger = logging.getLogger(__name__)


class RequestFeeder:
    """Sends RequestRound for aggregators where the wallet owns a requester.

    :ivar deploy: Deployment map.
    :ivar owner: Wallet public key that owns requester accounts.
    """

    def __init__(
        self,
        program: FluxAggregator,
        deploy: DeployInfo,
        owner: Pubkey,
        signer: Any,
    ) -> None:
        self.program = program
        self.deploy = deploy
        self.owner = to_pubkey(owner)
        self.signer = signer

    async def request_round(self, pair: str) -> bool:
        """Request a new round for ``pair``.

        :param pair: Pair name as in the deployment map.
        :returns: True if the request was confirmed.
        """
        info = self.deploy.aggregators.get(pair)
        if info is None:
            logger.error(f"{pair}: not found in deployment file")
            return False

        requester = info.find_requester(self.owner)
        if requester is None:
            logger.error(f"{pair}: no requester owned by {self.owner}")
            return False

        logger.info(f"{pair}: requesting new round")
        try:
            aggregator = await self.program.load_aggregator(info.pubkey)
            account = await self.program.load_requester(requester.pubkey)
        except (ChainClientError, CodecError) as e:
            logger.error(f"{pair}: round request failed: {e}")
            return False

        if account.aggregator != info.pubkey:
            logger.error(
                f"{pair}: requester {requester.pubkey} belongs to aggregator {account.aggregator}"
            )
            return False

        if not account.can_start_new_round(aggregator.round.id):
            logger.warning(
                f"{pair}: requester in cooldown until round {account.allow_start_round} "
                f"(current round={aggregator.round.id})"
            )
            return False

        try:
            tx_id = await self.program.request_round(
                info.pubkey, aggregator, requester.pubkey, self.owner, self.signer
            )
        except ChainClientError as e:
            logger.error(f"{pair}: round request failed: {e}")
            return False

        logger.debug(f"{pair}: round requested (tx={tx_id})")
        return True
