"""
Retry/Polling Controller
========================
Bounded retry around the provider status query. Only "not found" is retried:
it is the provider's read-after-write window right after a payment. Every
other failure goes straight back to the caller.
"""

import asyncio
from typing import Awaitable, Callable, Protocol

import structlog

from pipeline.errors import ProviderTransientError
from schemas.payment_definitions import PollResult, ProviderStatus

logger = structlog.get_logger().bind(component="status_poller")


class StatusClient(Protocol):
    async def get_order_status(self, merchant_transaction_id: str) -> ProviderStatus:
        ...


class StatusPoller:
    """Query the provider up to ``max_attempts`` times, sleeping between not-found replies."""

    def __init__(
        self,
        client: StatusClient,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def query_with_retry(self, merchant_transaction_id: str) -> PollResult:
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                status = await self.client.get_order_status(merchant_transaction_id)
            except ProviderTransientError as e:
                last_error = str(e)
                logger.warning("status_not_found",
                               merchant_transaction_id=merchant_transaction_id,
                               attempt=attempt,
                               max_attempts=self.max_attempts)
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_seconds)
                continue

            logger.info("status_fetched",
                        merchant_transaction_id=merchant_transaction_id,
                        attempt=attempt,
                        state=status.state)
            return PollResult(status=status, attempts=attempt)

        logger.warning("status_retries_exhausted",
                       merchant_transaction_id=merchant_transaction_id,
                       attempts=self.max_attempts)
        return PollResult(attempts=self.max_attempts, exhausted=True, last_error=last_error)
