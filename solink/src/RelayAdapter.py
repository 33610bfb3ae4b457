"""RelayAdapter: Hands submission rounds to an external job runner.

In relay mode the node does not submit on its own initiative. When a round
is due it posts ``(round, aggregator, pair)`` to the job runner's webhook,
and the runner calls back into the node to perform the submission.

Requests are authenticated with the runner's external-initiator access key
and secret headers, and retried with backoff on transport errors and
non-2xx responses.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

# Retry configuration for relay requests
MAX_RETRIES = 3
BACKOFF_BASE = 1.0
BACKOFF_MAX = 5.0


class RelayError(Exception):
    """Raised when the job runner cannot be reached or rejects a request."""

    pass


class RelayAdapter:
    """Webhook client for the external job runner.

    :ivar url: Base URL of the job runner.
    :ivar job_id: Job that performs the submission.
    :ivar timeout: Per-request timeout in seconds.
    """

    ACCESS_KEY_HEADER = "X-Chainlink-EA-AccessKey"
    SECRET_HEADER = "X-Chainlink-EA-Secret"

    def __init__(
        self,
        url: str,
        job_id: str,
        access_key: str,
        secret: str,
        timeout: float = 10.0,
        max_retries: int = MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the relay client.

        :param url: Base URL of the job runner (e.g. ``http://localhost:6688``).
        :param job_id: Job id to trigger.
        :param access_key: External initiator access key.
        :param secret: External initiator secret.
        :param timeout: Per-request timeout in seconds.
        :param max_retries: Attempts before giving up.
        :param transport: Optional httpx transport (tests).
        """
        if not url or not job_id:
            raise ValueError("Relay mode requires a job runner URL and job id")

        self.url = url.rstrip("/")
        self.job_id = job_id
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._headers = {
            self.ACCESS_KEY_HEADER: access_key,
            self.SECRET_HEADER: secret,
        }
        self._transport = transport

    @property
    def runs_url(self) -> str:
        return f"{self.url}/v2/specs/{self.job_id}/runs"

    async def request_submit(
        self, round_id: int, aggregator: Pubkey, pair: str
    ) -> dict[str, Any]:
        """Ask the job runner to run a submission for ``round_id``.

        :param round_id: Round to submit to.
        :param aggregator: Aggregator account.
        :param pair: Pair name.
        :returns: Decoded JSON response (empty dict if the body is not JSON).
        :raises RelayError: If every attempt fails.
        """
        payload = {
            "round": str(round_id),
            "aggregator": str(aggregator),
            "pairSymbol": pair,
        }

        async with httpx.AsyncClient(
            transport=self._transport, headers=self._headers, timeout=self.timeout
        ) as client:
            for attempt in range(self.max_retries):
                try:
                    logger.debug(
                        "POST %s payload=%s (attempt %d)", self.runs_url, payload, attempt + 1
                    )
                    response = await client.post(self.runs_url, json=payload)
                    if response.is_success:
                        logger.info(f"{pair}: relay accepted round {round_id}")
                        try:
                            return response.json()
                        except ValueError:
                            return {}
                    logger.warning(
                        "relay POST failed: %s %s (attempt %d/%d)",
                        response.status_code,
                        response.reason_phrase,
                        attempt + 1,
                        self.max_retries,
                    )
                except httpx.RequestError as exc:
                    logger.warning(
                        "relay POST error: %s (attempt %d/%d)",
                        exc,
                        attempt + 1,
                        self.max_retries,
                    )
                if attempt + 1 < self.max_retries:
                    await asyncio.sleep(min(BACKOFF_BASE * (1.5 ** attempt), BACKOFF_MAX))

        raise RelayError(
            f"Relay request for round {round_id} failed after {self.max_retries} attempts"
        )
