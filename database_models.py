from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    SQLite drops tzinfo on the way back out, so values are stored as naive UTC
    and always returned with tzinfo=UTC.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass a UTC-aware value")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class User(Base):
    """
    Registered app user. Every user owns exactly one Entitlement row,
    created in the same transaction.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    entitlement = relationship("Entitlement", back_populates="user", uselist=False, lazy="selectin")


class Entitlement(Base):
    """
    Trial and subscription state for one user.

    Only the billing reconciler, the expiry sweeper and checkout customer
    linking write to this table.
    """
    __tablename__ = "entitlements"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    subscription_status = Column(String, nullable=False, default="trial", index=True)
    trial_ends_at = Column(UTCDateTime, nullable=True)
    subscription_ends_at = Column(UTCDateTime, nullable=True, index=True)
    billing_customer_ref = Column(String, unique=True, nullable=True, index=True)
    billing_subscription_ref = Column(String, nullable=True, index=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="entitlement")


class DiaryEntry(Base):
    """A food logged by a user on a given calendar day."""
    __tablename__ = "diary_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_date = Column(Date, nullable=False, index=True)
    food_name = Column(String, nullable=False)
    calories = Column(Float, nullable=False, default=0.0)
    protein_g = Column(Float, nullable=False, default=0.0)
    carbs_g = Column(Float, nullable=False, default=0.0)
    fat_g = Column(Float, nullable=False, default=0.0)
    source = Column(String, nullable=False, default="manual")
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
