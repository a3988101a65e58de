import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Type
from uuid import UUID as PyUUID

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, Date, DateTime, Index, CheckConstraint, JSON
from sqlalchemy import Enum as SAEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class UserRole(str, Enum):
    CUSTOMER = "customer"
    OWNER = "owner"
    ADMIN = "admin"

class PackageType(str, Enum):
    TOUR = "tour"
    ACTIVITY = "activity"
    RENTAL = "rental"

class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class TransactionType(str, Enum):
    PAYMENT = "Payment"
    REFUND = "Refund"

class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELED = "canceled"

class RewardStatus(str, Enum):
    AVAILABLE = "available"
    USED = "used"
    EXPIRED = "expired"

class RewardScope(str, Enum):
    ALL = "all"
    TOUR = "tour"
    ACTIVITY = "activity"
    RENTAL = "rental"

class RewardOrigin(str, Enum):
    WELCOME = "welcome"
    SEASONAL = "seasonal"
    LOYALTY = "loyalty"
    MANUAL = "manual"


# pending -> confirmed|cancelled, confirmed -> completed|cancelled; the rest are terminal
BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


def enum_column(enum_cls: Type[Enum], name: str, **kwargs) -> Column:
    """Portable enum column storing the enum *values* (works on Postgres and SQLite)"""
    return Column(
        SAEnum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )


# Base model with common audit fields
class TimestampedModel(SQLModel):
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
        sa_column_kwargs={"onupdate": utcnow},
    )


# Models
class User(TimestampedModel, table=True):
    __tablename__ = "users"

    __table_args__ = (
        Index('idx_users_role', 'role'),
        CheckConstraint('length(email) > 0', name='check_email_not_empty'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=120, description="Display name")
    email: str = Field(
        index=True,
        unique=True,
        nullable=False,
        max_length=255,
        description="User's email address"
    )
    phone: Optional[str] = Field(default=None, max_length=30)
    role: UserRole = Field(
        default=UserRole.CUSTOMER,
        sa_column=enum_column(UserRole, "userrole", nullable=False),
        description="Caller role, enforced upstream"
    )
    fcm_token: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Device token for push notifications"
    )


class TourPackage(TimestampedModel, table=True):
    __tablename__ = "tour_packages"

    __table_args__ = (
        CheckConstraint('price_per_person >= 0', name='check_tour_price_non_negative'),
        CheckConstraint('duration_days >= 1', name='check_tour_duration'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=200)
    description: Optional[str] = Field(default=None)
    price_per_person: Decimal = Field(max_digits=12, decimal_places=2)
    min_persons: int = Field(default=1, ge=1)
    duration_days: int = Field(default=1, ge=1, description="Tour length in days")
    is_available: bool = Field(default=True)


class ActivityPackage(TimestampedModel, table=True):
    __tablename__ = "activity_packages"

    __table_args__ = (
        CheckConstraint('price_per_person >= 0', name='check_activity_price_non_negative'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=200)
    description: Optional[str] = Field(default=None)
    price_per_person: Decimal = Field(max_digits=12, decimal_places=2)
    min_persons: int = Field(default=1, ge=1)
    duration_hours: Optional[int] = Field(default=None, ge=1)
    is_available: bool = Field(default=True)


class RentalPackage(TimestampedModel, table=True):
    __tablename__ = "rental_packages"

    __table_args__ = (
        CheckConstraint('price_per_day >= 0', name='check_rental_price_non_negative'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=200)
    brand: Optional[str] = Field(default=None, max_length=100)
    model: Optional[str] = Field(default=None, max_length=100)
    plate_number: Optional[str] = Field(default=None, max_length=20)
    description: Optional[str] = Field(default=None)
    price_per_day: Decimal = Field(max_digits=12, decimal_places=2)
    is_available: bool = Field(default=True)


# Tagged union lookup: (package_type, id) -> table model
PACKAGE_MODELS: Dict[PackageType, Type[SQLModel]] = {
    PackageType.TOUR: TourPackage,
    PackageType.ACTIVITY: ActivityPackage,
    PackageType.RENTAL: RentalPackage,
}


class Booking(TimestampedModel, table=True):
    __tablename__ = "bookings"

    __table_args__ = (
        Index('idx_bookings_user_id', 'user_id'),
        Index('idx_bookings_status', 'status'),
        Index('idx_bookings_package', 'package_type', 'package_id'),
        Index('idx_bookings_dates', 'start_date', 'end_date'),
        CheckConstraint('quantity >= 1', name='check_booking_quantity'),
        CheckConstraint('final_price >= 0', name='check_final_price_non_negative'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    code: str = Field(
        unique=True,
        index=True,
        max_length=20,
        description="Human-shareable booking code"
    )
    user_id: PyUUID = Field(
        foreign_key="users.id",
        nullable=False,
        description="User who made the booking"
    )
    package_type: PackageType = Field(
        sa_column=enum_column(PackageType, "packagetype", nullable=False),
        description="Which catalog the package lives in"
    )
    package_id: PyUUID = Field(description="ID of the booked package")
    quantity: int = Field(default=1, ge=1)
    start_date: date = Field(sa_column=Column(Date, nullable=False))
    end_date: Optional[date] = Field(default=None, sa_column=Column(Date, nullable=True))

    # Pricing snapshot, never recomputed after creation
    unit_price_at_booking: Decimal = Field(max_digits=12, decimal_places=2)
    total_price: Decimal = Field(max_digits=12, decimal_places=2)
    reward_total_applied: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    final_price: Decimal = Field(max_digits=12, decimal_places=2)

    notes: Optional[str] = Field(default=None, max_length=500)
    status: BookingStatus = Field(
        default=BookingStatus.PENDING,
        sa_column=enum_column(BookingStatus, "bookingstatus", nullable=False),
        description="Current booking status"
    )

    def can_transition_to(self, new_status: BookingStatus) -> bool:
        return new_status in BOOKING_TRANSITIONS.get(BookingStatus(self.status), set())

    @property
    def is_active(self) -> bool:
        """Booking still holds its slot"""
        return self.status in (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class BookingReward(SQLModel, table=True):
    __tablename__ = "booking_rewards"

    __table_args__ = (
        Index('idx_booking_rewards_booking', 'booking_id'),
    )

    booking_id: PyUUID = Field(foreign_key="bookings.id", primary_key=True)
    reward_id: PyUUID = Field(foreign_key="rewards.id", primary_key=True)
    applied_amount: Decimal = Field(max_digits=12, decimal_places=2)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class BookingLog(SQLModel, table=True):
    """Append-only audit trail of booking status transitions"""
    __tablename__ = "booking_logs"

    __table_args__ = (
        Index('idx_booking_logs_booking', 'booking_id', 'id'),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: PyUUID = Field(foreign_key="bookings.id", nullable=False)
    user_id: Optional[PyUUID] = Field(
        default=None,
        foreign_key="users.id",
        description="Actor that caused the change; null for the system"
    )
    old_status: Optional[BookingStatus] = Field(
        default=None,
        sa_column=enum_column(BookingStatus, "bookingstatus", nullable=True),
    )
    new_status: BookingStatus = Field(
        sa_column=enum_column(BookingStatus, "bookingstatus", nullable=False),
    )
    notes: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class PaymentTransaction(TimestampedModel, table=True):
    __tablename__ = "payment_transactions"

    __table_args__ = (
        Index('idx_payment_transactions_booking', 'booking_id'),
        Index('idx_payment_transactions_status', 'status'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    booking_id: PyUUID = Field(foreign_key="bookings.id", nullable=False)
    type: TransactionType = Field(
        default=TransactionType.PAYMENT,
        sa_column=enum_column(TransactionType, "transactiontype", nullable=False),
    )
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    method: Optional[str] = Field(default=None, max_length=50)
    status: TransactionStatus = Field(
        default=TransactionStatus.PENDING,
        sa_column=enum_column(TransactionStatus, "transactionstatus", nullable=False),
    )
    gateway_reference: Optional[str] = Field(
        default=None,
        unique=True,
        index=True,
        max_length=100,
        description="Order id correlating this row to a gateway session"
    )
    raw_response: Optional[Dict[str, Any]] = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
        description="Last payload received from or returned by the gateway"
    )
    notes: Optional[str] = Field(default=None)
    confirmed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    confirmed_by: Optional[PyUUID] = Field(default=None, foreign_key="users.id")
    transacted_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Reward(TimestampedModel, table=True):
    __tablename__ = "rewards"

    __table_args__ = (
        Index('idx_rewards_user_status', 'user_id', 'status'),
        CheckConstraint('amount >= 0', name='check_reward_amount_non_negative'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: PyUUID = Field(foreign_key="users.id", nullable=False)
    origin: RewardOrigin = Field(
        default=RewardOrigin.MANUAL,
        sa_column=enum_column(RewardOrigin, "rewardorigin", nullable=False),
    )
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    status: RewardStatus = Field(
        default=RewardStatus.AVAILABLE,
        sa_column=enum_column(RewardStatus, "rewardstatus", nullable=False),
    )
    description: Optional[str] = Field(default=None)
    applies_to: RewardScope = Field(
        default=RewardScope.ALL,
        sa_column=enum_column(RewardScope, "rewardscope", nullable=False),
    )
    min_transaction: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    used_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    expired_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class Review(TimestampedModel, table=True):
    __tablename__ = "reviews"

    __table_args__ = (
        Index('idx_reviews_user_id', 'user_id'),
        Index('idx_reviews_package', 'package_type', 'package_id'),
        CheckConstraint('rating >= 1 AND rating <= 5', name='check_valid_rating'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    booking_id: PyUUID = Field(foreign_key="bookings.id", unique=True, nullable=False)
    user_id: PyUUID = Field(foreign_key="users.id", nullable=False)
    package_type: PackageType = Field(
        sa_column=enum_column(PackageType, "packagetype", nullable=False),
    )
    package_id: PyUUID = Field()
    rating: int = Field(ge=1, le=5, description="Rating (1-5 stars)")
    comment: Optional[str] = Field(default=None, max_length=2000)
