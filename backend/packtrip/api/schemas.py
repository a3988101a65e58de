from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal

# Import enums from models
from packtrip.db.models import (
    BookingStatus,
    PackageType,
    RewardOrigin,
    RewardScope,
    RewardStatus,
    TransactionStatus,
    TransactionType,
)

# ===== ERROR SCHEMAS =====

class FieldErrorRead(BaseModel):
    field: str
    message: str

class ValidationErrorResponse(BaseModel):
    detail: List[FieldErrorRead]

# ===== PACKAGE SCHEMAS =====

class TourPackageRead(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    price_per_person: Decimal
    min_persons: int
    duration_days: int
    is_available: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class ActivityPackageRead(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    price_per_person: Decimal
    min_persons: int
    duration_hours: Optional[int] = None
    is_available: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class RentalPackageRead(BaseModel):
    id: UUID
    name: str
    brand: Optional[str] = None
    model: Optional[str] = None
    plate_number: Optional[str] = None
    description: Optional[str] = None
    price_per_day: Decimal
    is_available: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

PACKAGE_READ_SCHEMAS = {
    PackageType.TOUR: TourPackageRead,
    PackageType.ACTIVITY: ActivityPackageRead,
    PackageType.RENTAL: RentalPackageRead,
}

# ===== BOOKING SCHEMAS =====

class BookingCreate(BaseModel):
    """Shape only; semantic checks return field-level errors from the booking service"""
    package_type: PackageType
    package_id: UUID
    quantity: int = 1
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None
    reward_ids: List[UUID] = []

class BookingRewardRead(BaseModel):
    reward_id: UUID
    applied_amount: Decimal

    class Config:
        from_attributes = True

class BookingRead(BaseModel):
    id: UUID
    code: str
    user_id: UUID
    package_type: PackageType
    package_id: UUID
    quantity: int
    start_date: date
    end_date: Optional[date] = None
    unit_price_at_booking: Decimal
    total_price: Decimal
    reward_total_applied: Decimal
    final_price: Decimal
    notes: Optional[str] = None
    status: BookingStatus
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class BookingLogRead(BaseModel):
    old_status: Optional[BookingStatus] = None
    new_status: BookingStatus
    user_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class BookingDetail(BookingRead):
    rewards: List[BookingRewardRead] = []
    logs: List[BookingLogRead] = []

class PaymentSessionRead(BaseModel):
    status: str = Field(..., description="created, failed or not_required")
    gateway_reference: Optional[str] = None
    session_token: Optional[str] = None
    redirect_url: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True

class BookingCreateResponse(BaseModel):
    booking: BookingRead
    payment_session: PaymentSessionRead
    rewards: List[BookingRewardRead] = []

class BookingCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    notes: Optional[str] = Field(None, max_length=500)

# ===== PAYMENT SCHEMAS =====

class TransactionRead(BaseModel):
    id: UUID
    booking_id: UUID
    type: TransactionType
    amount: Decimal
    method: Optional[str] = None
    status: TransactionStatus
    gateway_reference: Optional[str] = None
    notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    transacted_at: datetime

    class Config:
        from_attributes = True

class NotificationAck(BaseModel):
    status: str = "ok"

# ===== REWARD SCHEMAS =====

class RewardRead(BaseModel):
    id: UUID
    origin: RewardOrigin
    amount: Decimal
    status: RewardStatus
    description: Optional[str] = None
    applies_to: RewardScope
    min_transaction: Optional[Decimal] = None
    used_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True

class RewardPreviewRequest(BaseModel):
    package_type: PackageType
    total_price: Decimal = Field(..., ge=0)
    reward_ids: Optional[List[UUID]] = Field(
        default=None,
        description="Limit the preview to these rewards; all available rewards when omitted",
    )

class RewardPreviewResponse(BaseModel):
    applicable: List[RewardRead]
    not_applicable: List[RewardRead]
    reward_total: Decimal
    final_price: Decimal

# ===== REVIEW SCHEMAS =====

class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)

    @field_validator('comment')
    @classmethod
    def strip_comment(cls, v):
        if v is not None:
            v = v.strip()
            return v or None
        return v

class ReviewRead(BaseModel):
    id: UUID
    booking_id: UUID
    user_id: UUID
    package_type: PackageType
    package_id: UUID
    rating: int
    comment: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class CanReviewResponse(BaseModel):
    can_review: bool
    reason: Optional[str] = None
