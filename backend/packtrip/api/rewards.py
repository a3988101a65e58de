import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.api.schemas import RewardPreviewRequest, RewardPreviewResponse, RewardRead
from packtrip.core.rewards import final_price, select_rewards
from packtrip.core.security import Actor, get_current_actor
from packtrip.db import crud
from packtrip.db.models import utcnow
from packtrip.db.session import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rewards", tags=["rewards"])


@router.get("", response_model=List[RewardRead], summary="My available rewards")
async def list_rewards(
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    try:
        return await crud.get_available_rewards(session, actor.user_id, utcnow())
    except SQLAlchemyError as e:
        logger.error(f"Error loading rewards for user {actor.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve rewards"
        )


@router.post("/preview",
    response_model=RewardPreviewResponse,
    summary="Preview reward discount",
    description="Shows which rewards would apply to a booking of the given type and amount; nothing is claimed"
)
async def preview_rewards(
    payload: RewardPreviewRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    now = utcnow()
    if payload.reward_ids:
        rewards = await crud.get_user_rewards_by_ids(session, actor.user_id, payload.reward_ids)
    else:
        rewards = await crud.get_available_rewards(session, actor.user_id, now)

    selection = select_rewards(rewards, actor.user_id, payload.package_type, payload.total_price, now)
    return RewardPreviewResponse(
        applicable=[RewardRead.model_validate(r) for r in selection.applied],
        not_applicable=[RewardRead.model_validate(r) for r in selection.rejected],
        reward_total=selection.total,
        final_price=final_price(payload.total_price, selection.total),
    )
