"""
Access evaluation: decides whether a user may use the product right now
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.entitlement import EntitlementRepository
from models.entitlement import (
    AccessDecision,
    AccessStatus,
    EntitlementSnapshot,
    SubscriptionStatus,
)
from services.errors import NotFound

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

# A canceled subscription is not renewed but stays paid up until its end date
_PAID_THROUGH_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED)


def _days_until(end: datetime, now: datetime) -> int:
    return max(0, math.ceil((end - now) / ONE_DAY))


def evaluate(record: EntitlementSnapshot, now: datetime) -> AccessDecision:
    """
    Compute the access decision for an entitlement record at instant `now`.

    Precedence:
    1. Trial window still open -> trial (regardless of subscription status)
    2. Paid subscription whose end is still in the future -> active
    3. Otherwise -> expired

    Pure function: never cache the result, time moves independently of writes.
    """
    if record.trial_ends_at is not None and now < record.trial_ends_at:
        days = _days_until(record.trial_ends_at, now)
        return AccessDecision(
            entitled=True,
            status=AccessStatus.TRIAL,
            days_remaining=days,
            reason=f"Free trial active, {days} day(s) remaining",
        )

    if (
        record.subscription_status in _PAID_THROUGH_STATUSES
        and record.subscription_ends_at is not None
        and now < record.subscription_ends_at
    ):
        days = _days_until(record.subscription_ends_at, now)
        if record.subscription_status == SubscriptionStatus.CANCELED:
            reason = f"Subscription canceled, access continues for {days} day(s)"
        else:
            reason = f"Subscription active, renews or ends in {days} day(s)"
        return AccessDecision(
            entitled=True,
            status=AccessStatus.ACTIVE,
            days_remaining=days,
            reason=reason,
        )

    return AccessDecision(
        entitled=False,
        status=AccessStatus.EXPIRED,
        days_remaining=0,
        reason=_expired_reason(record),
    )


def _expired_reason(record: EntitlementSnapshot) -> str:
    if record.subscription_status == SubscriptionStatus.CANCELED:
        return "Subscription canceled and the paid period has ended"
    if record.subscription_status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED):
        return "Subscription expired, renew to continue"
    if record.trial_ends_at is not None:
        return "Trial expired, a subscription is required"
    return "A subscription is required"


class AccessService:
    """
    Read-only access checks for the API layer.
    """

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime]):
        self.db = db
        self.clock = clock
        self.entitlements = EntitlementRepository(db)

    async def get_snapshot(self, user_id: int) -> Optional[EntitlementSnapshot]:
        record = await self.entitlements.get_by_user_id(user_id)
        if record is None:
            return None
        return EntitlementSnapshot.from_row(record)

    async def check_access(self, user_id: int) -> AccessDecision:
        """
        Evaluate access for a user at the current instant.

        Raises:
            NotFound: if the user has no entitlement record
        """
        snapshot = await self.get_snapshot(user_id)
        if snapshot is None:
            logger.error(f"Access check for user {user_id} found no entitlement record")
            raise NotFound(f"No entitlement record for user {user_id}")
        return evaluate(snapshot, self.clock())
