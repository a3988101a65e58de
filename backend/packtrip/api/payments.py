"""
Payment endpoints: the gateway's HTTP notification hook and per-booking
payment history.
"""

from typing import List
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.api.schemas import NotificationAck, TransactionRead
from packtrip.core.booking import load_booking_for
from packtrip.core.notifications import NotificationOutbox, get_outbox
from packtrip.core.reconciler import GatewayNotification, WebhookReconciler
from packtrip.core.security import Actor, get_current_actor
from packtrip.core.settings import Settings, get_settings
from packtrip.db import crud
from packtrip.db.session import get_session

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/payments/notifications",
    response_model=NotificationAck,
    responses={
        200: {"description": "Notification processed (or already processed)"},
        403: {"description": "Signature mismatch"},
        404: {"description": "Unknown order reference"},
        500: {"description": "Database error; the gateway will retry"},
    },
    summary="Payment gateway notification",
    description="Reconciles a gateway status callback against the stored transaction and booking"
)
async def payment_notification(
    notification: GatewayNotification,
    session: AsyncSession = Depends(get_session),
    outbox: NotificationOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_settings),
):
    logger.info(
        "payment_notification_received",
        order_id=notification.order_id,
        transaction_status=notification.transaction_status,
        fraud_status=notification.fraud_status,
    )
    outcome = await WebhookReconciler(session, outbox, settings).reconcile(notification)
    logger.info(
        "payment_notification_processed",
        order_id=notification.order_id,
        result=outcome.result,
        transaction_status=outcome.transaction_status.value if outcome.transaction_status else None,
        booking_status=outcome.booking_status.value if outcome.booking_status else None,
    )
    return NotificationAck()


@router.get("/bookings/{booking_id}/payments", response_model=List[TransactionRead], summary="Payment history of a booking")
async def booking_payments(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    booking = await load_booking_for(session, actor, booking_id)
    return await crud.get_booking_transactions(session, booking.id)
