import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.api.schemas import CanReviewResponse, ReviewCreate, ReviewRead
from packtrip.core.booking import load_booking_for
from packtrip.core.reviews import create_review, review_eligibility
from packtrip.core.security import Actor, get_current_actor
from packtrip.db import crud
from packtrip.db.models import PackageType
from packtrip.db.session import get_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["reviews"])


@router.post("/bookings/{booking_id}/review",
    response_model=ReviewRead,
    status_code=status.HTTP_201_CREATED,
    summary="Review a completed booking"
)
async def add_review(
    booking_id: UUID,
    payload: ReviewCreate,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await create_review(session, actor, booking_id, payload.rating, payload.comment)


@router.get("/bookings/{booking_id}/can-review", response_model=CanReviewResponse)
async def can_review(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    booking = await load_booking_for(session, actor, booking_id)
    allowed, reason = await review_eligibility(session, actor, booking)
    return CanReviewResponse(can_review=allowed, reason=reason)


@router.get("/reviews/mine", response_model=List[ReviewRead], summary="Reviews I wrote")
async def my_reviews(
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await crud.get_user_reviews(session, actor.user_id)


@router.get("/packages/{package_type}/{package_id}/reviews", response_model=List[ReviewRead], summary="Reviews of a package")
async def package_reviews(
    package_type: PackageType,
    package_id: UUID,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
):
    return await crud.get_package_reviews(session, package_type, package_id, skip=skip, limit=limit)
