"""
Query and write helpers for bookings, rewards, payments and reviews.

Write helpers only add/flush; committing is left to the caller so a whole
booking or webhook unit of work lands in one transaction.
"""

import logging
from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update, and_, or_, func, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import SQLModel

from packtrip.db.models import (
    User, UserRole, PackageType, PACKAGE_MODELS,
    Booking, BookingStatus, BookingReward, BookingLog,
    PaymentTransaction, TransactionStatus, TransactionType,
    Reward, RewardStatus, Review, utcnow,
)

logger = logging.getLogger(__name__)

# ===== USERS =====

async def get_user_by_id(session: AsyncSession, user_id: UUID) -> Optional[User]:
    return await session.get(User, user_id)

async def get_users_by_roles(session: AsyncSession, roles: Iterable[UserRole]) -> List[User]:
    """Stakeholders to notify about new bookings"""
    result = await session.execute(
        select(User).where(User.role.in_(list(roles))).order_by(User.created_at)
    )
    return list(result.scalars().all())

# ===== PACKAGES =====

async def get_package(
    session: AsyncSession,
    package_type: PackageType,
    package_id: UUID
) -> Optional[SQLModel]:
    """Resolve the (type, id) tagged reference through the lookup table"""
    model = PACKAGE_MODELS[PackageType(package_type)]
    return await session.get(model, package_id)

async def get_packages(
    session: AsyncSession,
    package_type: PackageType,
    skip: int = 0,
    limit: int = 50,
    only_available: bool = True
) -> List[SQLModel]:
    model = PACKAGE_MODELS[PackageType(package_type)]
    query = select(model)
    if only_available:
        query = query.where(model.is_available.is_(True))
    result = await session.execute(
        query.order_by(model.name).offset(skip).limit(limit)
    )
    return list(result.scalars().all())

async def has_overlapping_booking(
    session: AsyncSession,
    package_type: PackageType,
    package_id: UUID,
    start_date: date,
    end_date: date
) -> bool:
    """True when an active booking of the same package intersects [start, end]"""
    existing_end = func.coalesce(Booking.end_date, Booking.start_date)
    result = await session.execute(
        select(func.count(Booking.id)).where(
            Booking.package_type == package_type,
            Booking.package_id == package_id,
            Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]),
            Booking.start_date <= end_date,
            existing_end >= start_date,
        )
    )
    return (result.scalar() or 0) > 0

# ===== REWARDS =====

async def get_user_rewards_by_ids(
    session: AsyncSession,
    user_id: UUID,
    reward_ids: Sequence[UUID]
) -> List[Reward]:
    if not reward_ids:
        return []
    result = await session.execute(
        select(Reward).where(Reward.user_id == user_id, Reward.id.in_(list(reward_ids)))
    )
    return list(result.scalars().all())

async def get_available_rewards(session: AsyncSession, user_id: UUID, now: datetime) -> List[Reward]:
    result = await session.execute(
        select(Reward)
        .where(
            Reward.user_id == user_id,
            Reward.status == RewardStatus.AVAILABLE,
            or_(Reward.expired_at.is_(None), Reward.expired_at > now),
        )
        .order_by(desc(Reward.created_at))
    )
    return list(result.scalars().all())

async def claim_reward(session: AsyncSession, reward_id: UUID, now: datetime) -> bool:
    """Compare-and-set available -> used; False when another booking got there first"""
    result = await session.execute(
        update(Reward)
        .where(Reward.id == reward_id, Reward.status == RewardStatus.AVAILABLE)
        .values(status=RewardStatus.USED, used_at=now, updated_at=now)
    )
    return result.rowcount == 1

async def release_booking_rewards(session: AsyncSession, booking_id: UUID) -> int:
    """Hand the rewards applied to a cancelled booking back to their owner"""
    reward_ids = select(BookingReward.reward_id).where(BookingReward.booking_id == booking_id)
    now = utcnow()
    result = await session.execute(
        update(Reward)
        .where(Reward.id.in_(reward_ids), Reward.status == RewardStatus.USED)
        .values(status=RewardStatus.AVAILABLE, used_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0

async def get_booking_rewards(session: AsyncSession, booking_id: UUID) -> List[BookingReward]:
    result = await session.execute(
        select(BookingReward).where(BookingReward.booking_id == booking_id)
    )
    return list(result.scalars().all())

# ===== BOOKINGS =====

async def get_booking_by_id(session: AsyncSession, booking_id: UUID) -> Optional[Booking]:
    return await session.get(Booking, booking_id)

async def get_booking_by_code(session: AsyncSession, code: str) -> Optional[Booking]:
    result = await session.execute(select(Booking).where(Booking.code == code))
    return result.scalar_one_or_none()

async def get_user_bookings(
    session: AsyncSession,
    user_id: UUID,
    skip: int = 0,
    limit: int = 20
) -> List[Booking]:
    result = await session.execute(
        select(Booking)
        .where(Booking.user_id == user_id)
        .order_by(desc(Booking.created_at))
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())

async def get_bookings(
    session: AsyncSession,
    status: Optional[BookingStatus] = None,
    skip: int = 0,
    limit: int = 50
) -> List[Booking]:
    query = select(Booking)
    if status is not None:
        query = query.where(Booking.status == status)
    result = await session.execute(
        query.order_by(desc(Booking.created_at)).offset(skip).limit(limit)
    )
    return list(result.scalars().all())

def append_booking_log(
    session: AsyncSession,
    booking_id: UUID,
    old_status: Optional[BookingStatus],
    new_status: BookingStatus,
    user_id: Optional[UUID] = None,
    notes: Optional[str] = None
) -> BookingLog:
    log = BookingLog(
        booking_id=booking_id,
        user_id=user_id,
        old_status=old_status,
        new_status=new_status,
        notes=notes,
    )
    session.add(log)
    return log

async def transition_booking(
    session: AsyncSession,
    booking: Booking,
    new_status: BookingStatus,
    user_id: Optional[UUID] = None,
    notes: Optional[str] = None
) -> bool:
    """
    Move a booking to ``new_status`` with a compare-and-set on its current
    status and append exactly one log row. Returns False when the row was
    changed underneath us (nothing written in that case).
    """
    old_status = BookingStatus(booking.status)
    result = await session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == old_status)
        .values(status=new_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"Booking {booking.code} status changed concurrently, skipping {old_status.value} -> {new_status.value}")
        return False
    set_committed_value(booking, "status", new_status)
    append_booking_log(session, booking.id, old_status, new_status, user_id=user_id, notes=notes)
    return True

async def get_booking_logs(session: AsyncSession, booking_id: UUID) -> List[BookingLog]:
    result = await session.execute(
        select(BookingLog).where(BookingLog.booking_id == booking_id).order_by(BookingLog.id)
    )
    return list(result.scalars().all())

# ===== PAYMENT TRANSACTIONS =====

async def get_transaction_by_reference(
    session: AsyncSession,
    gateway_reference: str
) -> Optional[PaymentTransaction]:
    result = await session.execute(
        select(PaymentTransaction).where(PaymentTransaction.gateway_reference == gateway_reference)
    )
    return result.scalar_one_or_none()

async def get_booking_transactions(session: AsyncSession, booking_id: UUID) -> List[PaymentTransaction]:
    result = await session.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.booking_id == booking_id)
        .order_by(desc(PaymentTransaction.transacted_at))
    )
    return list(result.scalars().all())

async def get_latest_payment_attempt(session: AsyncSession, booking_id: UUID) -> Optional[PaymentTransaction]:
    """Most recent gateway attempt; reward-settled rows carry no reference"""
    result = await session.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.booking_id == booking_id,
            PaymentTransaction.type == TransactionType.PAYMENT,
            PaymentTransaction.gateway_reference.is_not(None),
        )
        .order_by(desc(PaymentTransaction.transacted_at), desc(PaymentTransaction.created_at))
        .limit(1)
    )
    return result.scalars().first()

async def has_successful_payment(session: AsyncSession, booking_id: UUID) -> bool:
    result = await session.execute(
        select(func.count())
        .select_from(PaymentTransaction)
        .where(
            PaymentTransaction.booking_id == booking_id,
            PaymentTransaction.status == TransactionStatus.SUCCESS,
        )
    )
    return (result.scalar() or 0) > 0

async def update_transaction_if_status(
    session: AsyncSession,
    transaction: PaymentTransaction,
    expected_status: TransactionStatus,
    **values
) -> bool:
    """Compare-and-set write on a payment transaction keyed by its previous status"""
    values.setdefault("updated_at", utcnow())
    result = await session.execute(
        update(PaymentTransaction)
        .where(
            and_(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status == expected_status,
            )
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    for key, value in values.items():
        set_committed_value(transaction, key, value)
    return True

# ===== REVIEWS =====

async def get_review_by_booking(session: AsyncSession, booking_id: UUID) -> Optional[Review]:
    result = await session.execute(select(Review).where(Review.booking_id == booking_id))
    return result.scalar_one_or_none()

async def get_user_reviews(session: AsyncSession, user_id: UUID) -> List[Review]:
    result = await session.execute(
        select(Review).where(Review.user_id == user_id).order_by(desc(Review.created_at))
    )
    return list(result.scalars().all())

async def get_package_reviews(
    session: AsyncSession,
    package_type: PackageType,
    package_id: UUID,
    skip: int = 0,
    limit: int = 50
) -> List[Review]:
    result = await session.execute(
        select(Review)
        .where(Review.package_type == package_type, Review.package_id == package_id)
        .order_by(desc(Review.created_at))
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())
