import uuid
from unittest.mock import Mock, patch

import pytest

from packtrip.core.notifications import (
    EventKind,
    FcmPushSender,
    LoggingEmailSender,
    NotificationOutbox,
    NotifierWorker,
    OutboundEvent,
    Recipient,
    build_senders,
)
from packtrip.core.settings import Settings

ALICE = Recipient(user_id=uuid.uuid4(), email="alice@example.com", name="Alice", fcm_token="fcm-alice")
BOB = Recipient(user_id=uuid.uuid4(), email="bob@example.com", name="Bob")


def event(recipients=(ALICE,)):
    return OutboundEvent(
        kind=EventKind.PAYMENT_CONFIRMED,
        recipients=list(recipients),
        subject="Payment received",
        body="Your booking is confirmed.",
        data={"booking_code": "BK-ABCDEFGH"},
    )


class RecordingSender:
    name = "recording"

    def __init__(self, fail_for=None):
        self.sent = []
        self.fail_for = fail_for

    async def send(self, event, recipient):
        if recipient == self.fail_for:
            raise RuntimeError("mailbox full")
        self.sent.append((event.kind, recipient.email))


class TestOutbox:
    def test_events_without_recipients_are_skipped(self):
        outbox = NotificationOutbox()
        outbox.publish([event(recipients=[]), event()])
        assert outbox.queue.qsize() == 1

    def test_full_outbox_drops_and_counts(self):
        outbox = NotificationOutbox(maxsize=1)
        outbox.publish([event(), event()])
        assert outbox.queue.qsize() == 1
        assert outbox.dropped == 1


class TestWorker:
    @pytest.mark.asyncio
    async def test_drain_delivers_to_every_recipient(self):
        outbox = NotificationOutbox()
        sender = RecordingSender()
        outbox.publish([event(recipients=[ALICE, BOB])])

        delivered = await NotifierWorker(outbox, [sender]).drain()
        assert delivered == 1
        assert sender.sent == [
            (EventKind.PAYMENT_CONFIRMED, "alice@example.com"),
            (EventKind.PAYMENT_CONFIRMED, "bob@example.com"),
        ]
        assert outbox.queue.empty()

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_stop_others(self):
        flaky = RecordingSender(fail_for=ALICE)
        steady = RecordingSender()
        worker = NotifierWorker(NotificationOutbox(), [flaky, steady])

        failures = await worker.deliver(event(recipients=[ALICE, BOB]))
        assert failures == 1
        assert flaky.sent == [(EventKind.PAYMENT_CONFIRMED, "bob@example.com")]
        assert len(steady.sent) == 2

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        outbox = NotificationOutbox()
        sender = RecordingSender()
        worker = NotifierWorker(outbox, [sender])
        worker.start()
        outbox.publish([event()])
        await worker.stop()
        assert sender.sent == [(EventKind.PAYMENT_CONFIRMED, "alice@example.com")]


class TestSenders:
    @pytest.mark.asyncio
    async def test_email_sender_logs_only(self):
        await LoggingEmailSender().send(event(), ALICE)

    @pytest.mark.asyncio
    async def test_push_posts_to_fcm(self):
        sender = FcmPushSender("server-key", "https://fcm.example.test/send", timeout=3)
        with patch("packtrip.core.notifications.requests.post") as post:
            post.return_value = Mock(status_code=200)
            await sender.send(event(), ALICE)

        args, kwargs = post.call_args
        assert args[0] == "https://fcm.example.test/send"
        assert kwargs["json"]["to"] == "fcm-alice"
        assert kwargs["json"]["data"] == {"booking_code": "BK-ABCDEFGH"}
        assert kwargs["headers"]["Authorization"] == "key=server-key"

    @pytest.mark.asyncio
    async def test_push_skips_recipients_without_token(self):
        sender = FcmPushSender("server-key", "https://fcm.example.test/send")
        with patch("packtrip.core.notifications.requests.post") as post:
            await sender.send(event(), BOB)
        post.assert_not_called()

    def test_push_enabled_only_with_server_key(self):
        assert [s.name for s in build_senders(Settings(_env_file=None, FCM_SERVER_KEY=""))] == ["email"]
        assert [s.name for s in build_senders(Settings(_env_file=None, FCM_SERVER_KEY="k"))] == ["email", "push"]
