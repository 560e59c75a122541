"""
Alert notification gateways.

The gateway side must treat a redelivered (rule_id, state) pair as a
duplicate; the webhook notifier sends an Idempotency-Key header for that.
"""
import logging
from typing import List, Optional, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from orderflow.models.schemas import AlertNotification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, notification: AlertNotification) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log and keeps them for inspection."""

    def __init__(self) -> None:
        self.sent: List[AlertNotification] = []

    async def send(self, notification: AlertNotification) -> None:
        self.sent.append(notification)
        log = logger.warning if notification.state == "firing" else logger.info
        log(
            f"[{notification.severity.upper()}] {notification.rule_id} {notification.state}: "
            f"{notification.message}"
        )


class WebhookNotifier:
    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        attempts: int = 3,
        timeout: float = 10.0,
    ):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.attempts = attempts

    async def send(self, notification: AlertNotification) -> None:
        headers = {
            "Idempotency-Key": f"{notification.rule_id}:{notification.state}:{notification.event_id}"
        }
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_random_exponential(multiplier=0.2, max=5),
            retry=retry_if_exception_type(httpx.HTTPError),
            reraise=True,
        ):
            with attempt:
                resp = await self.client.post(
                    self.url, json=notification.model_dump(mode="json"), headers=headers
                )
                resp.raise_for_status()
        logger.info(f"Delivered {notification.rule_id} {notification.state} to {self.url}")

    async def aclose(self) -> None:
        await self.client.aclose()
