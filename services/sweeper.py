"""
Expiry Sweeper - consistency backstop for missed or delayed Stripe webhooks.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crud.entitlement import EntitlementRepository
from models.entitlement import SubscriptionStatus
from utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    Moves active records whose subscription end has passed to expired.

    Only ever transitions active -> expired for records already past their
    end, re-checked under the per-user lock, so it cannot undo a renewal the
    reconciler wrote in the meantime.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLocks,
        clock: Callable[[], datetime],
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.clock = clock

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Run one sweep.

        Returns:
            Number of records transitioned to expired
        """
        now = now or self.clock()
        async with self.session_factory() as db:
            user_ids = await EntitlementRepository(db).list_stale_active_user_ids(now)

        expired = 0
        for user_id in user_ids:
            try:
                if await self._expire_one(user_id, now):
                    expired += 1
            except OperationalError as e:
                # Left active; the next sweep or webhook converges it
                logger.error(f"Sweeper could not expire user {user_id}: {e}")

        logger.info(f"Expiry sweep at {now.isoformat()}: {len(user_ids)} candidate(s), {expired} expired")
        return expired

    async def _expire_one(self, user_id: int, now: datetime) -> bool:
        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                repo = EntitlementRepository(db)
                record = await repo.get_by_user_id(user_id, for_update=True)
                if (
                    record is None
                    or record.subscription_status != SubscriptionStatus.ACTIVE.value
                    or record.subscription_ends_at is None
                    or record.subscription_ends_at >= now
                ):
                    return False
                await repo.set_status(record, SubscriptionStatus.EXPIRED, now)
                await db.commit()
                logger.info(f"User {user_id} subscription expired at {record.subscription_ends_at}")
                return True
