from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, select, text, update
from sqlalchemy.orm import Mapped, mapped_column

from database import db
from utils.credits import utcnow


class SubscriptionStatus(Enum):
    ACTIVE = 'active'
    CANCELLED = 'cancelled'
    PAST_DUE = 'past_due'


class UserSubscription(db.Model):
    __tablename__ = 'user_subscriptions'

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    tier_id: Mapped[str] = mapped_column(
        db.String(50), db.ForeignKey('subscription_tiers.id', ondelete='RESTRICT'), nullable=False
    )
    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    current_period_start: Mapped[datetime] = mapped_column(db.DateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(db.DateTime, nullable=False)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(db.DateTime)
    credits_allocated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    credits_used: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        # One active subscription per user
        Index(
            'uq_user_subscriptions_active',
            'user_id',
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'tier_id': self.tier_id,
            'status': self.status,
            'current_period_start': self.current_period_start.isoformat() if self.current_period_start else None,
            'current_period_end': self.current_period_end.isoformat() if self.current_period_end else None,
            'next_billing_date': self.next_billing_date.isoformat() if self.next_billing_date else None,
            'credits_allocated': int(self.credits_allocated or 0),
            'credits_used': int(self.credits_used or 0),
        }


class SubscriptionModel:
    """Data access layer for user subscriptions"""

    def __init__(self, session):
        self.session = session

    def get_active(self, user_id: str) -> Optional[UserSubscription]:
        stmt = (
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .order_by(UserSubscription.created_at.desc())
        )
        return self.session.execute(stmt).scalars().first()

    def add(self, subscription: UserSubscription) -> UserSubscription:
        self.session.add(subscription)
        self.session.flush()
        return subscription

    def cancel_active(self, user_id: str) -> int:
        stmt = (
            update(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .values(status=SubscriptionStatus.CANCELLED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount
