from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from youthauth.logging import get_logger, mask_identifier

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationIntent:
    kind: str
    recipient: str
    payload: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher:
    """Fire-and-forget handoff to the notification service.

    Callers only ``enqueue``; a background worker drains the queue and POSTs each
    intent as a JSON body to ``{base_url}/{kind}``. Delivery failures are logged and dropped so
    they never reach the operation that produced the intent. Without a
    ``base_url`` intents are logged instead of sent (dev mode).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout_seconds: float = 5.0,
        queue_size: int = 1000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout_seconds = timeout_seconds
        self.queue_size = queue_size
        self._transport = transport
        self._queue: Optional[asyncio.Queue[NotificationIntent]] = None
        self._worker: Optional[asyncio.Task] = None
        self._client: Optional[httpx.AsyncClient] = None
        self.sent = 0
        self.failed = 0
        self.dropped = 0

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _get_queue(self) -> asyncio.Queue[NotificationIntent]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        return self._queue

    def enqueue(self, intent: NotificationIntent) -> bool:
        """Queue an intent without waiting; returns False when it had to be dropped."""
        try:
            self._get_queue().put_nowait(intent)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "notification_dropped",
                kind=intent.kind,
                recipient=mask_identifier(intent.recipient),
                reason="queue_full",
            )
            return False
        return True

    def welcome(self, email: str, role: str) -> bool:
        return self.enqueue(NotificationIntent("welcome-email", email, {"email": email, "role": role}))

    def password_reset(self, email: str, reset_token: str) -> bool:
        return self.enqueue(
            NotificationIntent("password-reset", email, {"email": email, "token": reset_token})
        )

    async def deliver(self, intent: NotificationIntent) -> bool:
        if not self.is_configured:
            logger.info(
                "notification_dev_mode",
                kind=intent.kind,
                recipient=mask_identifier(intent.recipient),
            )
            self.sent += 1
            return True
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds), transport=self._transport
            )
        try:
            response = await self._client.post(f"{self.base_url}/{intent.kind}", json=intent.payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self.failed += 1
            logger.error(
                "notification_send_rejected",
                kind=intent.kind,
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            self.failed += 1
            logger.error(
                "notification_send_failed",
                kind=intent.kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.sent += 1
        logger.info("notification_sent", kind=intent.kind, recipient=mask_identifier(intent.recipient))
        return True

    async def drain(self) -> int:
        """Deliver everything currently queued; returns the number processed."""
        queue = self._get_queue()
        processed = 0
        while not queue.empty():
            intent = queue.get_nowait()
            try:
                await self.deliver(intent)
            finally:
                queue.task_done()
            processed += 1
        return processed

    async def _run(self) -> None:
        queue = self._get_queue()
        while True:
            intent = await queue.get()
            try:
                await self.deliver(intent)
            except Exception as exc:
                logger.error("notification_worker_error", error_type=type(exc).__name__, error=str(exc))
            finally:
                queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def stats(self) -> Dict[str, int]:
        return {
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "sent": self.sent,
            "failed": self.failed,
            "dropped": self.dropped,
        }
