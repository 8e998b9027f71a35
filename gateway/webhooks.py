"""Async webhook dispatch of session lifecycle events."""

import asyncio
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = float(os.environ.get("RSGATEWAY_WEBHOOK_TIMEOUT", "10.0"))
WEBHOOK_MAX_RETRIES = int(os.environ.get("RSGATEWAY_WEBHOOK_MAX_RETRIES", "3"))


class EventType(str, Enum):
    """Webhook event types."""

    SESSION_CREATED = "session.created"
    SESSION_SUSPENDED = "session.suspended"
    SESSION_RESUMED = "session.resumed"
    SESSION_CLOSED = "session.closed"
    TUNNEL_DEAD = "tunnel.dead"


@dataclass
class WebhookPayload:
    """Standard webhook payload structure."""

    event: str
    timestamp: str
    session_id: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class WebhookDispatcher:
    """
    Non-blocking webhook dispatcher.

    Lifecycle transitions never wait on the HTTP round trip; each event is
    posted from its own task with retry and exponential backoff.
    """

    def __init__(
        self,
        url: str = "",
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff: float = 1.0,
    ):
        self.url = url
        self.timeout = timeout if timeout is not None else WEBHOOK_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else WEBHOOK_MAX_RETRIES
        self.backoff = backoff
        self._client: httpx.AsyncClient | None = None
        self._pending_tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def start(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(timeout=self.timeout)
        if self.url:
            logger.info(f"Webhook dispatcher started (url={self.url})")
        else:
            logger.debug("Webhook dispatcher started (no URL configured)")

    async def stop(self) -> None:
        """Cancel in-flight deliveries and close the client."""
        for task in self._pending_tasks:
            task.cancel()
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
        self._pending_tasks.clear()

        if self._client:
            await self._client.aclose()
            self._client = None
        logger.debug("Webhook dispatcher stopped")

    def dispatch(self, event: EventType | str, session_id: str, data: dict | None = None) -> None:
        """Fire-and-forget webhook dispatch. Does not block the caller."""
        event_name = event.value if isinstance(event, EventType) else event
        if not self.url:
            logger.debug(f"No webhook URL configured for event {event_name}")
            return

        payload = WebhookPayload(
            event=event_name,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            session_id=session_id,
            data=data or {},
        )

        task = asyncio.create_task(self._send_webhook(self.url, payload))
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    async def _send_webhook(self, url: str, payload: WebhookPayload) -> bool:
        if not self._client:
            logger.warning("Webhook dispatcher not started, dropping event")
            return False

        for attempt in range(self.max_retries):
            try:
                response = await self._client.post(url, json=payload.to_dict())
                if response.status_code < 400:
                    logger.debug(f"Webhook sent: {payload.event} -> {url}")
                    return True
                logger.warning(
                    f"Webhook failed: {payload.event} -> {url}, "
                    f"status={response.status_code}, attempt={attempt + 1}"
                )
            except httpx.HTTPError as e:
                logger.warning(
                    f"Webhook error: {payload.event} -> {url}, error={e}, attempt={attempt + 1}"
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff * 2**attempt)

        logger.error(f"Webhook failed after {self.max_retries} attempts: {payload.event}")
        return False
