"""
Billing Event Reconciler - keeps entitlement records in line with Stripe.

Events arrive at least once and in no particular order. Every write is an
absolute assignment of state Stripe reported, so re-applying an event is
harmless and the latest write wins.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crud.entitlement import EntitlementRepository
from database_models import Entitlement
from models.entitlement import (
    ApplyOutcome,
    ApplyResult,
    BillingEvent,
    BillingSubscription,
    CheckoutCompleted,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionCreatedOrUpdated,
    SubscriptionStatus,
)
from services.errors import NotFound, StorageConflict
from services.stripe_gateway import StripeGateway
from utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

Mutation = Callable[[EntitlementRepository, Entitlement], Awaitable[ApplyOutcome]]


class BillingEventReconciler:
    """
    Applies billing event variants to entitlement records.

    Each mutation runs under the per-user lock in its own transaction that
    re-reads the row FOR UPDATE, so concurrent events for one user serialize
    while different users proceed independently.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        locks: KeyedLocks,
        clock: Callable[[], datetime],
        discard_stale_updates: bool = True,
        retry_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.locks = locks
        self.clock = clock
        self.discard_stale_updates = discard_stale_updates
        self.retry_attempts = max(1, retry_attempts)

    async def apply(self, event: BillingEvent) -> ApplyOutcome:
        """
        Apply one verified billing event.

        Raises:
            UpstreamUnavailable: Stripe re-fetch failed; nothing was written
            StorageConflict: the write kept failing after local retries
        """
        if isinstance(event, SubscriptionCreatedOrUpdated):
            return await self._apply_subscription_state(
                BillingSubscription(
                    subscription_ref=event.subscription_ref,
                    customer_ref=event.customer_ref,
                    status=event.status,
                    period_end=event.period_end,
                )
            )
        if isinstance(event, SubscriptionCanceled):
            return await self._apply_cancellation(event)
        if isinstance(event, PaymentSucceeded):
            return await self._apply_payment_succeeded(event)
        if isinstance(event, PaymentFailed):
            return self._apply_payment_failed(event)
        if isinstance(event, CheckoutCompleted):
            return await self._apply_checkout_completed(event)
        raise TypeError(f"Unsupported billing event: {event!r}")

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------

    async def _apply_subscription_state(self, subscription: BillingSubscription) -> ApplyOutcome:
        user_id = await self._resolve_customer(subscription.customer_ref)
        if user_id is None:
            logger.warning(
                f"Subscription {subscription.subscription_ref} references unknown customer "
                f"{subscription.customer_ref}, skipping"
            )
            return ApplyOutcome(ApplyResult.IGNORED, f"Unknown customer {subscription.customer_ref}")

        async def mutation(repo, record):
            return await self._write_subscription(repo, record, subscription)

        return await self._mutate(user_id, mutation)

    async def _apply_cancellation(self, event: SubscriptionCanceled) -> ApplyOutcome:
        user_id = await self._resolve_customer(event.customer_ref)
        if user_id is None:
            logger.warning(f"Cancellation for unknown customer {event.customer_ref}, skipping")
            return ApplyOutcome(ApplyResult.IGNORED, f"Unknown customer {event.customer_ref}")

        async def mutation(repo, record):
            # Access lapses at the stored end date; the end is kept on purpose
            await repo.set_status(record, SubscriptionStatus.CANCELED, self.clock())
            logger.info(
                f"User {record.user_id} subscription canceled, paid through {record.subscription_ends_at}"
            )
            return ApplyOutcome(ApplyResult.APPLIED, "Subscription canceled", record.user_id)

        return await self._mutate(user_id, mutation)

    async def _apply_payment_succeeded(self, event: PaymentSucceeded) -> ApplyOutcome:
        # Invoices carry less state than subscriptions, so ask Stripe directly
        try:
            subscription = await self.gateway.retrieve_subscription(event.subscription_ref)
        except NotFound:
            logger.warning(f"Paid invoice references subscription {event.subscription_ref} unknown to Stripe")
            return ApplyOutcome(ApplyResult.IGNORED, f"Unknown subscription {event.subscription_ref}")
        return await self._apply_subscription_state(subscription)

    def _apply_payment_failed(self, event: PaymentFailed) -> ApplyOutcome:
        logger.warning(f"Payment failed for customer {event.customer_ref}; access follows subscription updates")
        return ApplyOutcome(ApplyResult.IGNORED, "Payment failure noted")

    async def _apply_checkout_completed(self, event: CheckoutCompleted) -> ApplyOutcome:
        subscription: Optional[BillingSubscription] = None
        if event.subscription_ref:
            try:
                subscription = await self.gateway.retrieve_subscription(event.subscription_ref)
            except NotFound:
                logger.warning(f"Checkout references subscription {event.subscription_ref} unknown to Stripe")

        async def mutation(repo, record):
            now = self.clock()
            if not await repo.link_customer(record, event.customer_ref, now):
                logger.error(
                    f"User {record.user_id} is linked to customer {record.billing_customer_ref}, "
                    f"refusing to relink to {event.customer_ref}"
                )
                return ApplyOutcome(ApplyResult.SKIPPED, "User already linked to another customer", record.user_id)
            if subscription is None:
                return ApplyOutcome(ApplyResult.APPLIED, "Customer linked", record.user_id)
            if subscription.customer_ref != event.customer_ref:
                logger.error(
                    f"Subscription {subscription.subscription_ref} belongs to {subscription.customer_ref}, "
                    f"not {event.customer_ref}"
                )
                return ApplyOutcome(ApplyResult.SKIPPED, "Subscription customer mismatch", record.user_id)
            return await self._write_subscription(repo, record, subscription)

        outcome = await self._mutate(event.user_id, mutation)
        if outcome.user_id is None:
            logger.warning(f"Checkout completed for unknown user {event.user_id}, skipping")
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _write_subscription(
        self,
        repo: EntitlementRepository,
        record: Entitlement,
        subscription: BillingSubscription,
    ) -> ApplyOutcome:
        if subscription.status == SubscriptionStatus.ACTIVE and subscription.period_end is None:
            logger.warning(
                f"Subscription {subscription.subscription_ref} is active without a period end, not applied"
            )
            return ApplyOutcome(ApplyResult.SKIPPED, "Active subscription without period end", record.user_id)

        stored_end = record.subscription_ends_at
        if (
            self.discard_stale_updates
            and subscription.subscription_ref == record.billing_subscription_ref
            and stored_end is not None
            and subscription.period_end is not None
            and subscription.period_end < stored_end
        ):
            logger.info(
                f"Discarding stale update for user {record.user_id}: period end "
                f"{subscription.period_end} is older than stored {stored_end}"
            )
            return ApplyOutcome(ApplyResult.SKIPPED, "Stale subscription update", record.user_id)

        await repo.apply_subscription(
            record,
            status=subscription.status,
            period_end=subscription.period_end,
            subscription_ref=subscription.subscription_ref,
            now=self.clock(),
        )
        logger.info(
            f"User {record.user_id} subscription {subscription.subscription_ref} -> "
            f"{subscription.status.value} until {subscription.period_end}"
        )
        return ApplyOutcome(ApplyResult.APPLIED, f"Subscription {subscription.status.value}", record.user_id)

    async def _resolve_customer(self, customer_ref: str) -> Optional[int]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self.session_factory() as db:
                    return await EntitlementRepository(db).find_user_id_by_customer_ref(customer_ref)
            except OperationalError as e:
                last_error = e
                logger.warning(
                    f"Lookup of customer {customer_ref} failed "
                    f"(attempt {attempt}/{self.retry_attempts}): {e}"
                )
        raise StorageConflict(f"Could not look up customer {customer_ref}: {last_error}")

    async def _mutate(self, user_id: int, mutation: Mutation) -> ApplyOutcome:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self.locks.hold(user_id):
                    async with self.session_factory() as db:
                        repo = EntitlementRepository(db)
                        record = await repo.get_by_user_id(user_id, for_update=True)
                        if record is None:
                            return ApplyOutcome(ApplyResult.IGNORED, f"No entitlement record for user {user_id}")
                        outcome = await mutation(repo, record)
                        await db.commit()
                        return outcome
            except OperationalError as e:
                last_error = e
                logger.warning(
                    f"Write conflict on entitlement for user {user_id} "
                    f"(attempt {attempt}/{self.retry_attempts}): {e}"
                )
        raise StorageConflict(f"Could not update entitlement for user {user_id}: {last_error}")

    async def link_customer(self, user_id: int, customer_ref: str) -> Optional[str]:
        """
        Attach a Stripe customer to a user's record (first write wins).

        Returns:
            The customer reference the record carries afterwards, or None if
            the user has no entitlement record
        """
        linked = {}

        async def mutation(repo, record):
            await repo.link_customer(record, customer_ref, self.clock())
            linked["customer_ref"] = record.billing_customer_ref
            return ApplyOutcome(ApplyResult.APPLIED, "Customer linked", record.user_id)

        await self._mutate(user_id, mutation)
        effective = linked.get("customer_ref")
        if effective is not None and effective != customer_ref:
            logger.warning(f"User {user_id} already linked to {effective}; discarding customer {customer_ref}")
        return effective
