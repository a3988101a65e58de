"""
Booking endpoints: creation, listing, cancellation, payment retries and the
admin status workflow.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from slowapi import Limiter
from slowapi.util import get_remote_address

from packtrip.api.schemas import (
    BookingCancel,
    BookingCreate,
    BookingCreateResponse,
    BookingDetail,
    BookingLogRead,
    BookingRead,
    BookingRewardRead,
    BookingStatusUpdate,
    PaymentSessionRead,
    ValidationErrorResponse,
)
from packtrip.core.booking import BookingOrchestrator, BookingRequest, load_booking_for
from packtrip.core.errors import PermissionDeniedError
from packtrip.core.notifications import NotificationOutbox, get_outbox
from packtrip.core.payments import PaymentGateway, get_gateway
from packtrip.core.security import Actor, get_current_actor
from packtrip.core.settings import Settings, get_settings
from packtrip.db import crud
from packtrip.db.models import BookingStatus
from packtrip.db.session import get_session

# Set up logging
logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=get_settings().ENABLE_RATE_LIMITING)


def get_orchestrator(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    outbox: NotificationOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_settings),
) -> BookingOrchestrator:
    return BookingOrchestrator(session, gateway, outbox, settings)


@router.post("/bookings",
    response_model=BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "Booking created; payment session attached"},
        404: {"description": "Package not found"},
        422: {"description": "Validation failed", "model": ValidationErrorResponse},
        429: {"description": "Rate limit exceeded"},
    },
    summary="Create a booking",
    description="Prices the package, applies the selected rewards and opens a payment session"
)
@limiter.limit(get_settings().RATE_LIMIT_BOOKING)
async def create_booking(
    request: Request,
    payload: BookingCreate,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.create_booking(actor, BookingRequest(**payload.model_dump()))
    return BookingCreateResponse(
        booking=BookingRead.model_validate(result.booking),
        payment_session=PaymentSessionRead.model_validate(result.payment_session),
        rewards=[BookingRewardRead.model_validate(r) for r in result.applied_rewards],
    )


@router.get("/bookings", response_model=List[BookingRead], summary="List my bookings")
async def list_my_bookings(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    try:
        bookings = await crud.get_user_bookings(session, actor.user_id, skip=skip, limit=limit)
    except SQLAlchemyError as e:
        logger.error(f"Error listing bookings for user {actor.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve bookings"
        )
    return [BookingRead.model_validate(b) for b in bookings]


@router.get("/bookings/{booking_id}", response_model=BookingDetail, summary="Booking detail with rewards and history")
async def read_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    booking = await load_booking_for(session, actor, booking_id)
    rewards = await crud.get_booking_rewards(session, booking.id)
    logs = await crud.get_booking_logs(session, booking.id)

    detail = BookingDetail.model_validate(booking)
    detail.rewards = [BookingRewardRead.model_validate(r) for r in rewards]
    detail.logs = [BookingLogRead.model_validate(log) for log in logs]
    return detail


@router.post("/bookings/{booking_id}/cancel", response_model=BookingRead, summary="Cancel my pending booking")
async def cancel_booking(
    booking_id: UUID,
    payload: Optional[BookingCancel] = None,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    reason = payload.reason if payload else None
    booking = await orchestrator.cancel_booking(actor, booking_id, reason)
    return BookingRead.model_validate(booking)


@router.post("/bookings/{booking_id}/payment-session",
    response_model=PaymentSessionRead,
    summary="Open a new payment session",
    description="Creates a fresh gateway reference for a booking that is still pending"
)
async def open_payment_session(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.open_payment_session(actor, booking_id)


# ===== ADMIN =====

@router.get("/admin/bookings", response_model=List[BookingRead], summary="All bookings (staff)")
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    if not actor.is_staff:
        raise PermissionDeniedError("Only staff can list all bookings")
    bookings = await crud.get_bookings(session, status=status_filter, skip=skip, limit=limit)
    return [BookingRead.model_validate(b) for b in bookings]


@router.put("/admin/bookings/{booking_id}/status", response_model=BookingRead, summary="Change booking status (staff)")
async def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    booking = await orchestrator.update_status(actor, booking_id, payload.status, payload.notes)
    return BookingRead.model_validate(booking)
