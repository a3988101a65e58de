"""
Database base configuration
Imports all models to ensure they're registered with SQLModel metadata
"""

from sqlmodel import SQLModel

# Import all models so they're registered with SQLModel.metadata
from packtrip.db.models import (
    User,
    TourPackage,
    ActivityPackage,
    RentalPackage,
    Booking,
    BookingReward,
    BookingLog,
    PaymentTransaction,
    Reward,
    Review,
)

Base = SQLModel.metadata

__all__ = ["Base", "SQLModel"]
