import logging
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.core.errors import ConflictError, NotFoundError, PermissionDeniedError, StorageError, ValidationError
from packtrip.core.security import Actor
from packtrip.db import crud
from packtrip.db.models import Booking, BookingStatus, Review

logger = logging.getLogger(__name__)


async def review_eligibility(session: AsyncSession, actor: Actor, booking: Booking) -> Tuple[bool, Optional[str]]:
    """Only the booking's owner, once it is completed, and only once"""
    if booking.user_id != actor.user_id:
        return False, "Only the customer who made the booking can review it."
    if BookingStatus(booking.status) != BookingStatus.COMPLETED:
        return False, "Only completed bookings can be reviewed."
    if await crud.get_review_by_booking(session, booking.id) is not None:
        return False, "This booking has already been reviewed."
    return True, None


async def create_review(
    session: AsyncSession,
    actor: Actor,
    booking_id: UUID,
    rating: int,
    comment: Optional[str] = None,
) -> Review:
    booking = await crud.get_booking_by_id(session, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if booking.user_id != actor.user_id:
        raise PermissionDeniedError("You can only review your own bookings")

    allowed, reason = await review_eligibility(session, actor, booking)
    if not allowed:
        raise ValidationError.single("booking_id", reason)

    review = Review(
        booking_id=booking.id,
        user_id=actor.user_id,
        package_type=booking.package_type,
        package_id=booking.package_id,
        rating=rating,
        comment=comment,
    )
    session.add(review)
    try:
        await session.commit()
    except IntegrityError as e:
        # unique booking_id: a second submission raced this one
        await session.rollback()
        raise ConflictError("This booking has already been reviewed") from e
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Failed to save review for booking {booking.code}: {e}")
        raise StorageError("Could not save review") from e

    logger.info(f"Review {review.id} added for booking {booking.code} ({rating} stars)")
    return review
