from datetime import date
from typing import Any, List, Optional

from packtrip.core.errors import FieldError
from packtrip.db.models import PackageType


def validate_booking_request(
    request: Any,
    today: date,
    notes_max_length: int = 500,
) -> List[FieldError]:
    """
    Semantic checks on a booking request. Returns every problem found rather
    than stopping at the first one; an empty list means the request is valid.
    """
    errors: List[FieldError] = []

    package_type: Optional[PackageType] = request.package_type
    if request.quantity is None or request.quantity < 1:
        errors.append(FieldError("quantity", "The minimum quantity is 1."))
    elif package_type == PackageType.RENTAL and request.quantity != 1:
        errors.append(FieldError("quantity", "A rental booking covers exactly one vehicle."))

    if request.start_date is None:
        errors.append(FieldError("start_date", "The start date is required."))
    elif request.start_date < today:
        errors.append(FieldError("start_date", "The start date cannot be in the past."))

    if package_type == PackageType.RENTAL and request.end_date is None:
        errors.append(FieldError("end_date", "The end date is required for rentals."))
    if (
        request.end_date is not None
        and request.start_date is not None
        and request.end_date < request.start_date
    ):
        errors.append(FieldError("end_date", "The end date must be after or equal to the start date."))

    if request.notes is not None and len(request.notes) > notes_max_length:
        errors.append(FieldError("notes", f"Notes may not be longer than {notes_max_length} characters."))

    reward_ids = request.reward_ids or []
    if len(set(reward_ids)) != len(reward_ids):
        errors.append(FieldError("reward_ids", "The same reward was selected more than once."))

    return errors
