"""
Reward selection: which of a user's rewards apply to a booking and how much
discount they add up to. Pure functions, no database writes; claiming the
selected rewards happens inside the booking transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import UUID

from packtrip.db.models import PackageType, Reward, RewardScope, RewardStatus


@dataclass
class RewardSelection:
    applied: List[Reward] = field(default_factory=list)
    rejected: List[Reward] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        # not capped at the booking total; the final price clamps at zero instead
        return sum((Decimal(r.amount) for r in self.applied), Decimal("0"))

    @property
    def reward_ids(self) -> List[UUID]:
        return [r.id for r in self.applied]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_redeemable(reward: Reward, user_id: UUID, package_type: PackageType, now: datetime) -> bool:
    """Ownership, status, expiry and scope checks"""
    if reward.user_id != user_id:
        return False
    if RewardStatus(reward.status) != RewardStatus.AVAILABLE:
        return False
    expired_at = _as_utc(reward.expired_at)
    if expired_at is not None and expired_at <= now:
        return False
    return RewardScope(reward.applies_to) in (RewardScope.ALL, RewardScope(PackageType(package_type).value))


def meets_minimum(reward: Reward, total_price: Decimal) -> bool:
    return reward.min_transaction is None or Decimal(reward.min_transaction) <= total_price


def select_rewards(
    rewards: Iterable[Reward],
    user_id: UUID,
    package_type: PackageType,
    total_price: Decimal,
    now: Optional[datetime] = None,
) -> RewardSelection:
    now = _as_utc(now) or datetime.now(timezone.utc)
    selection = RewardSelection()
    seen = set()
    for reward in rewards:
        if reward.id in seen:
            continue
        seen.add(reward.id)
        if is_redeemable(reward, user_id, package_type, now) and meets_minimum(reward, total_price):
            selection.applied.append(reward)
        else:
            selection.rejected.append(reward)
    return selection


def final_price(total_price: Decimal, reward_total: Decimal) -> Decimal:
    return max(Decimal("0"), Decimal(total_price) - Decimal(reward_total))
