"""
Payment gateway webhook reconciliation.

Gateways deliver notifications at least once and sometimes out of order, so
every write here is guarded twice: an equality check on the mapped status
(replays are no-ops) and a compare-and-set on the row's previous status
(concurrent deliveries cannot both apply).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.core.errors import NotFoundError, PermissionDeniedError, StorageError
from packtrip.core.notifications import EventKind, NotificationOutbox, OutboundEvent
from packtrip.core.booking import recipient_for
from packtrip.core.payments import verify_notification_signature
from packtrip.core.settings import Settings, get_settings
from packtrip.db import crud
from packtrip.db.models import Booking, BookingStatus, PaymentTransaction, TransactionStatus, utcnow

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"


class GatewayNotification(BaseModel):
    """HTTP notification body as posted by Midtrans"""
    model_config = ConfigDict(extra="allow")

    order_id: str
    transaction_status: str
    payment_type: Optional[str] = None
    fraud_status: Optional[str] = None
    status_code: Optional[str] = None
    gross_amount: Optional[str] = None
    signature_key: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class StatusMapping:
    transaction_status: TransactionStatus
    booking_status: Optional[BookingStatus]


@dataclass
class ReconcileOutcome:
    result: str  # applied | duplicate | ignored
    transaction_status: Optional[TransactionStatus] = None
    booking_status: Optional[BookingStatus] = None


# Where a transaction may go next; anything else is a stale or out-of-order delivery
TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELED,
        TransactionStatus.REFUNDED,
    },
    TransactionStatus.SUCCESS: {TransactionStatus.REFUNDED},
    TransactionStatus.FAILED: set(),
    TransactionStatus.CANCELED: set(),
    TransactionStatus.REFUNDED: set(),
}


def map_gateway_status(
    transaction_status: str,
    fraud_status: Optional[str] = None,
    cancel_on_failure: bool = False,
) -> Optional[StatusMapping]:
    """Translate the gateway vocabulary; None for statuses we do not act on"""
    event = (transaction_status or "").lower()
    fraud = (fraud_status or "").lower()
    failed_booking = BookingStatus.CANCELLED if cancel_on_failure else None

    if event == "capture":
        if fraud == "challenge":
            return StatusMapping(TransactionStatus.PENDING, None)
        if fraud == "deny":
            return StatusMapping(TransactionStatus.FAILED, failed_booking)
        return StatusMapping(TransactionStatus.SUCCESS, BookingStatus.CONFIRMED)
    if event == "settlement":
        return StatusMapping(TransactionStatus.SUCCESS, BookingStatus.CONFIRMED)
    if event == "pending":
        return StatusMapping(TransactionStatus.PENDING, None)
    if event == "deny":
        return StatusMapping(TransactionStatus.FAILED, failed_booking)
    if event in ("expire", "cancel"):
        return StatusMapping(TransactionStatus.CANCELED, BookingStatus.CANCELLED)
    if event in ("refund", "partial_refund"):
        return StatusMapping(TransactionStatus.REFUNDED, None)
    return None


class WebhookReconciler:
    def __init__(
        self,
        session: AsyncSession,
        outbox: NotificationOutbox,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.outbox = outbox
        self.settings = settings or get_settings()

    def verify(self, notification: GatewayNotification) -> None:
        server_key = self.settings.MIDTRANS_SERVER_KEY
        if not server_key:
            return
        if not verify_notification_signature(
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
            notification.signature_key,
            server_key,
        ):
            logger.warning(f"Rejected notification for {notification.order_id}: bad signature")
            raise PermissionDeniedError("Invalid notification signature")

    async def reconcile(self, notification: GatewayNotification) -> ReconcileOutcome:
        self.verify(notification)
        try:
            outcome, booking = await self._apply(notification)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error reconciling {notification.order_id}: {e}")
            raise StorageError("Could not reconcile payment notification") from e

        if outcome.result == APPLIED and booking is not None and outcome.booking_status is not None:
            await self._notify(booking, outcome.booking_status)
        return outcome

    async def _apply(self, notification: GatewayNotification):
        transaction = await crud.get_transaction_by_reference(self.session, notification.order_id)
        if transaction is None:
            logger.warning(f"Notification for unknown order {notification.order_id}")
            raise NotFoundError("Transaction not found")

        mapping = map_gateway_status(
            notification.transaction_status,
            notification.fraud_status,
            cancel_on_failure=self.settings.CANCEL_BOOKING_ON_PAYMENT_FAILURE,
        )
        if mapping is None:
            logger.info(
                f"Ignoring gateway status '{notification.transaction_status}' for {notification.order_id}"
            )
            return ReconcileOutcome(IGNORED), None

        previous = TransactionStatus(transaction.status)
        if previous == mapping.transaction_status:
            logger.info(f"Duplicate notification for {notification.order_id} ({previous.value}), nothing to do")
            return ReconcileOutcome(DUPLICATE, previous), None
        if mapping.transaction_status not in TRANSACTION_TRANSITIONS[previous]:
            logger.warning(
                f"Out-of-order notification for {notification.order_id}: "
                f"{previous.value} -> {mapping.transaction_status.value} ignored"
            )
            return ReconcileOutcome(IGNORED, previous), None

        now = utcnow()
        values = {
            "status": mapping.transaction_status,
            "method": notification.payment_type or transaction.method,
            "raw_response": notification.model_dump(exclude_none=True, exclude={"signature_key"}),
            "notes": f"Gateway event: {notification.transaction_status}",
        }
        if mapping.transaction_status == TransactionStatus.SUCCESS:
            values["confirmed_at"] = now
            values["confirmed_by"] = None

        if not await crud.update_transaction_if_status(self.session, transaction, previous, **values):
            # another delivery of the same event won the race
            await self.session.rollback()
            logger.info(f"Concurrent notification for {notification.order_id} already applied")
            return ReconcileOutcome(DUPLICATE, previous), None

        booking = await crud.get_booking_by_id(self.session, transaction.booking_id)
        booking_changed = None
        target = mapping.booking_status
        if booking is not None and target is not None and BookingStatus(booking.status) != target:
            held_by = await self._cancellation_blocker(booking, transaction, target)
            if held_by:
                logger.info(
                    f"Booking {booking.code} kept {BookingStatus(booking.status).value} "
                    f"on {notification.transaction_status} for {notification.order_id}: {held_by}"
                )
            elif booking.can_transition_to(target):
                note = f"Payment gateway: {notification.transaction_status}"
                if notification.fraud_status:
                    note += f" (fraud: {notification.fraud_status})"
                if await crud.transition_booking(self.session, booking, target, user_id=None, notes=note):
                    booking_changed = target
                    if target == BookingStatus.CANCELLED:
                        await crud.release_booking_rewards(self.session, booking.id)
            else:
                logger.warning(
                    f"Booking {booking.code} is {BookingStatus(booking.status).value}, "
                    f"not moving to {target.value} on {notification.transaction_status}"
                )

        await self.session.commit()
        logger.info(
            f"Reconciled {notification.order_id}: transaction {previous.value} -> "
            f"{mapping.transaction_status.value}"
            + (f", booking -> {booking_changed.value}" if booking_changed else "")
        )
        return ReconcileOutcome(APPLIED, mapping.transaction_status, booking_changed), booking

    async def _cancellation_blocker(
        self,
        booking: Booking,
        transaction: PaymentTransaction,
        target: BookingStatus,
    ) -> Optional[str]:
        """
        A failed or expired attempt only cancels a booking that is still
        waiting on that very attempt. Success from any attempt may confirm.
        """
        if target != BookingStatus.CANCELLED:
            return None
        if BookingStatus(booking.status) != BookingStatus.PENDING:
            return "booking is no longer pending"
        if await crud.has_successful_payment(self.session, booking.id):
            return "booking already has a successful payment"
        latest = await crud.get_latest_payment_attempt(self.session, booking.id)
        if latest is not None and latest.id != transaction.id:
            return f"superseded by attempt {latest.gateway_reference}"
        return None

    async def _notify(self, booking: Booking, status: BookingStatus) -> None:
        try:
            owner = await crud.get_user_by_id(self.session, booking.user_id)
        except SQLAlchemyError as e:
            logger.error(f"Could not load owner of booking {booking.code} for notification: {e}")
            return
        if owner is None:
            return

        if status == BookingStatus.CONFIRMED:
            event = OutboundEvent(
                kind=EventKind.PAYMENT_CONFIRMED,
                recipients=[recipient_for(owner)],
                subject=f"Payment received for {booking.code}",
                body=f"Your booking {booking.code} is confirmed.",
                data={"booking_code": booking.code, "status": status.value},
            )
        else:
            event = OutboundEvent(
                kind=EventKind.BOOKING_CANCELLED,
                recipients=[recipient_for(owner)],
                subject=f"Booking {booking.code} cancelled",
                body=f"Payment for booking {booking.code} was not completed.",
                data={"booking_code": booking.code, "status": status.value},
            )
        self.outbox.publish([event])
