"""
Outbound notifications.

Core services publish ``OutboundEvent`` objects to the outbox *after* their
transaction commits. A separate ``NotifierWorker`` drains the outbox and hands
each event to the configured senders; delivery failures are logged and never
reach the booking or payment state.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests
import structlog
from fastapi.concurrency import run_in_threadpool

from packtrip.core.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class EventKind(str, Enum):
    BOOKING_CREATED = "booking_created"
    PAYMENT_CONFIRMED = "payment_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_STATUS_CHANGED = "booking_status_changed"


@dataclass(frozen=True)
class Recipient:
    user_id: Any
    email: str
    name: str
    fcm_token: Optional[str] = None


@dataclass
class OutboundEvent:
    kind: EventKind
    recipients: List[Recipient]
    subject: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    name: str

    async def send(self, event: OutboundEvent, recipient: Recipient) -> None:
        ...


class LoggingEmailSender:
    """Mail goes through the upstream mailer; here we only record what would be sent"""

    name = "email"

    async def send(self, event: OutboundEvent, recipient: Recipient) -> None:
        logger.info(
            "email_notification",
            kind=event.kind.value,
            to=recipient.email,
            subject=event.subject,
            booking_code=event.data.get("booking_code"),
        )


class FcmPushSender:
    """Push notification through the FCM HTTP endpoint"""

    name = "push"

    def __init__(self, server_key: str, endpoint: str, timeout: float = 10.0):
        self.server_key = server_key
        self.endpoint = endpoint
        self.timeout = timeout

    def _post(self, payload: Dict[str, Any]) -> None:
        response = requests.post(
            self.endpoint,
            json=payload,
            headers={"Authorization": f"key={self.server_key}"},
            timeout=self.timeout,
        )
        response.raise_for_status()

    async def send(self, event: OutboundEvent, recipient: Recipient) -> None:
        if not recipient.fcm_token:
            return
        payload = {
            "to": recipient.fcm_token,
            "notification": {"title": event.subject, "body": event.body},
            "data": {k: str(v) for k, v in event.data.items()},
        }
        await run_in_threadpool(self._post, payload)


def build_senders(settings: Settings) -> List[NotificationSender]:
    senders: List[NotificationSender] = [LoggingEmailSender()]
    if settings.FCM_SERVER_KEY:
        senders.append(FcmPushSender(settings.FCM_SERVER_KEY, settings.FCM_ENDPOINT))
    return senders


class NotificationOutbox:
    """In-process queue between committed transactions and the notifier worker"""

    def __init__(self, maxsize: int = 1000):
        self.queue: "asyncio.Queue[OutboundEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, events: Iterable[OutboundEvent]) -> None:
        for event in events:
            if not event.recipients:
                continue
            try:
                self.queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.error("notification_dropped", kind=event.kind.value, reason="outbox_full")


class NotifierWorker:
    def __init__(self, outbox: NotificationOutbox, senders: List[NotificationSender]):
        self.outbox = outbox
        self.senders = senders
        self._task: Optional[asyncio.Task] = None

    async def deliver(self, event: OutboundEvent) -> int:
        """Send one event to every recipient on every channel; returns failure count"""
        failures = 0
        for recipient in event.recipients:
            for sender in self.senders:
                try:
                    await sender.send(event, recipient)
                except Exception as e:
                    failures += 1
                    logger.error(
                        "notification_delivery_failed",
                        kind=event.kind.value,
                        channel=sender.name,
                        recipient=str(recipient.user_id),
                        error=str(e),
                    )
        return failures

    async def drain(self) -> int:
        """Deliver everything currently queued (used at shutdown and in tests)"""
        delivered = 0
        while not self.outbox.queue.empty():
            event = self.outbox.queue.get_nowait()
            try:
                await self.deliver(event)
                delivered += 1
            finally:
                self.outbox.queue.task_done()
        return delivered

    async def run(self) -> None:
        while True:
            event = await self.outbox.queue.get()
            try:
                await self.deliver(event)
            finally:
                self.outbox.queue.task_done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()


_outbox: Optional[NotificationOutbox] = None


def get_outbox() -> NotificationOutbox:
    """FastAPI dependency returning the process-wide outbox"""
    global _outbox
    if _outbox is None:
        _outbox = NotificationOutbox(maxsize=get_settings().NOTIFICATION_QUEUE_SIZE)
    return _outbox
