from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

from packtrip.core.errors import ValidationError
from packtrip.db.models import PackageType


@dataclass(frozen=True)
class PriceQuote:
    unit_price: Decimal
    billable_units: int
    total_price: Decimal
    end_date: Optional[date]


def unit_price_for(package_type: PackageType, package: Any) -> Decimal:
    """Per-person price for tours/activities, per-day price for rentals"""
    if package_type == PackageType.RENTAL:
        return Decimal(package.price_per_day)
    return Decimal(package.price_per_person)


def derive_end_date(
    package_type: PackageType,
    package: Any,
    start_date: date,
    end_date: Optional[date] = None,
) -> Optional[date]:
    if package_type == PackageType.TOUR:
        return start_date + timedelta(days=package.duration_days - 1)
    if package_type == PackageType.RENTAL:
        if end_date is None:
            raise ValidationError.single("end_date", "The end date is required for rentals.")
        if end_date < start_date:
            raise ValidationError.single("end_date", "The end date must be after or equal to the start date.")
        return end_date
    # activities are a single point in time
    return None


def rental_days(start_date: date, end_date: date) -> int:
    """Inclusive day count: 1 Jan to 3 Jan is 3 days"""
    return (end_date - start_date).days + 1


def quote(
    package_type: PackageType,
    package: Any,
    quantity: int,
    start_date: date,
    end_date: Optional[date] = None,
) -> PriceQuote:
    """
    Price a booking at the package's current rates.

    ``total_price = unit_price * quantity`` for tours and activities. A rental
    is one vehicle, billed per inclusive day.
    """
    package_type = PackageType(package_type)
    if quantity < 1:
        raise ValidationError.single("quantity", "The minimum quantity is 1.")
    if package_type == PackageType.RENTAL and quantity != 1:
        raise ValidationError.single("quantity", "A rental booking covers exactly one vehicle.")

    unit_price = unit_price_for(package_type, package)
    resolved_end = derive_end_date(package_type, package, start_date, end_date)

    billable_units = quantity
    if package_type == PackageType.RENTAL:
        billable_units = rental_days(start_date, resolved_end)

    return PriceQuote(
        unit_price=unit_price,
        billable_units=billable_units,
        total_price=unit_price * billable_units,
        end_date=resolved_end,
    )
