"""
EntitlementRepository for reads and writes of Entitlement rows
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Entitlement
from models.entitlement import SubscriptionStatus


class EntitlementRepository:
    """
    All entitlement queries go through here. Lookups by billing reference
    return user ids so callers can take the per-user lock before mutating.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_user_id(self, user_id: int, for_update: bool = False) -> Optional[Entitlement]:
        stmt = select(Entitlement).where(Entitlement.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_user_id_by_customer_ref(self, customer_ref: str) -> Optional[int]:
        result = await self.db.execute(
            select(Entitlement.user_id).where(Entitlement.billing_customer_ref == customer_ref)
        )
        return result.scalar_one_or_none()

    async def list_stale_active_user_ids(self, now: datetime) -> List[int]:
        """User ids whose active subscription end has already passed."""
        result = await self.db.execute(
            select(Entitlement.user_id).where(
                Entitlement.subscription_status == SubscriptionStatus.ACTIVE.value,
                Entitlement.subscription_ends_at.is_not(None),
                Entitlement.subscription_ends_at < now,
            )
        )
        return list(result.scalars().all())

    async def link_customer(self, record: Entitlement, customer_ref: str, now: datetime) -> bool:
        """
        Attach a Stripe customer to the record. First write wins: an existing
        reference is never replaced.

        Returns:
            True if the record now carries customer_ref, False if it is linked
            to a different customer.
        """
        if record.billing_customer_ref is None:
            record.billing_customer_ref = customer_ref
            record.updated_at = now
            await self.db.flush()
            return True
        return record.billing_customer_ref == customer_ref

    async def apply_subscription(
        self,
        record: Entitlement,
        status: SubscriptionStatus,
        period_end: Optional[datetime],
        subscription_ref: str,
        now: datetime,
    ) -> Entitlement:
        record.subscription_status = status.value
        record.subscription_ends_at = period_end
        record.billing_subscription_ref = subscription_ref
        record.updated_at = now
        await self.db.flush()
        return record

    async def set_status(self, record: Entitlement, status: SubscriptionStatus, now: datetime) -> Entitlement:
        record.subscription_status = status.value
        record.updated_at = now
        await self.db.flush()
        return record
