import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from job_scheduler.config import SchedulerConfig
from job_scheduler.notifiers.protocol import DeliveryResult, Notifier

logger = logging.getLogger(__name__)


class WebhookNotifier(Notifier):
    """
    Notifier that POSTs events as JSON to a webhook endpoint using aiohttp.

    Each attempt is bounded by ``timeout`` seconds. Without a URL every
    delivery is skipped.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: float = 5.0,
        max_attempts: int = 1,
        retry_backoff: float = 0.5,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if retry_backoff < 0:
            raise ValueError("retry_backoff must not be negative")
        self.url: Optional[str] = url or None
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> "WebhookNotifier":
        return cls(
            url=config.webhook_url,
            timeout=config.webhook_timeout,
            max_attempts=config.webhook_max_attempts,
            retry_backoff=config.webhook_retry_backoff,
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def deliver(self, payload: Dict[str, Any]) -> DeliveryResult:
        if not self.url:
            logger.info("Webhook URL not configured, skipping notification")
            return DeliveryResult(delivered=False, skipped=True)

        result = DeliveryResult(delivered=False)
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self.retry_backoff * 2 ** (attempt - 2))
            result = await self._attempt(payload, attempt)
            if result.delivered:
                logger.info("Webhook delivered to %s (status %s)", self.url, result.status_code)
                return result

        logger.warning(
            "Webhook delivery to %s failed after %d attempt(s): %s",
            self.url, result.attempts, result.error,
        )
        return result

    async def _attempt(self, payload: Dict[str, Any], attempt: int) -> DeliveryResult:
        try:
            async with self._get_session().post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"},
            ) as response:
                if 200 <= response.status < 300:
                    return DeliveryResult(delivered=True, status_code=response.status, attempts=attempt)
                return DeliveryResult(
                    delivered=False,
                    status_code=response.status,
                    error=f"Unexpected status {response.status}",
                    attempts=attempt,
                )
        except asyncio.TimeoutError:
            return DeliveryResult(
                delivered=False,
                error=f"Timed out after {self.timeout.total}s",
                attempts=attempt,
            )
        except aiohttp.ClientError as e:
            return DeliveryResult(delivered=False, error=f"Transport error: {e}", attempts=attempt)
        except Exception as e:
            return DeliveryResult(delivered=False, error=f"Unexpected error: {e}", attempts=attempt)
