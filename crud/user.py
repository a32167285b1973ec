"""
UserRepository for database operations on User model
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Entitlement, User
from models.entitlement import SubscriptionStatus


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address.

        Args:
            email: User's email address (case-insensitive search)

        Returns:
            User object if found, None otherwise
        """
        result = await self.db.execute(
            select(User).where(User.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def create_user(self, user_data: dict, now: datetime, trial_days: int) -> User:
        """
        Create a new user together with its entitlement record.

        Both rows are flushed in the caller's transaction, so a user never
        exists without a trial window.

        Args:
            user_data: Dictionary containing user data. Must include:
                - email: str
                - hashed_password: str
                Optional:
                - name: str
                - is_active: bool (defaults to True)
            now: Signup instant; the trial ends trial_days after it
            trial_days: Length of the one-time trial

        Returns:
            Created User object
        """
        user = User(
            name=user_data.get("name"),
            email=user_data["email"].lower(),
            hashed_password=user_data["hashed_password"],
            is_active=user_data.get("is_active", True),
            created_at=now,
        )
        user.entitlement = Entitlement(
            subscription_status=SubscriptionStatus.TRIAL.value,
            trial_ends_at=now + timedelta(days=trial_days),
            updated_at=now,
        )
        self.db.add(user)
        await self.db.flush()
        await self.db.refresh(user)
        return user
