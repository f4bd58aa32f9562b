from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Mapped, mapped_column

from database import db
from utils.credits import utcnow


class SubscriptionTier(db.Model):
    """Recurring plan: monthly credit allotment with a rollover cap."""
    __tablename__ = 'subscription_tiers'

    id: Mapped[str] = mapped_column(db.String(50), primary_key=True)
    name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(db.Text)
    monthly_credits: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    max_rollover: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    price_cents: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    features: Mapped[Optional[list]] = mapped_column(db.JSON)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def price_dollars(self) -> float:
        return (self.price_cents or 0) / 100

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'monthly_credits': int(self.monthly_credits or 0),
            'max_rollover': int(self.max_rollover or 0),
            'price_cents': int(self.price_cents or 0),
            'features': list(self.features or []),
            'is_active': bool(self.is_active),
            'sort_order': int(self.sort_order or 0),
        }


class CreditPackage(db.Model):
    """One-time purchasable bundle of credits."""
    __tablename__ = 'credit_packages'

    id: Mapped[str] = mapped_column(db.String(50), primary_key=True)
    name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(db.Text)
    credits: Mapped[int] = mapped_column(db.Integer, nullable=False)
    bonus_credits: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    price_cents: Mapped[int] = mapped_column(db.Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, nullable=False)

    @property
    def total_credits(self) -> int:
        return int(self.credits or 0) + int(self.bonus_credits or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'credits': int(self.credits or 0),
            'bonus_credits': int(self.bonus_credits or 0),
            'total_credits': self.total_credits,
            'price_cents': int(self.price_cents or 0),
            'is_active': bool(self.is_active),
            'sort_order': int(self.sort_order or 0),
        }


class CatalogModel:
    """Read-only access to tiers and packages.

    Administration of the catalog happens outside this service; only active
    rows are listed, in `sort_order`.
    """

    def __init__(self, session):
        self.session = session

    def list_tiers(self) -> List[SubscriptionTier]:
        stmt = (
            select(SubscriptionTier)
            .where(SubscriptionTier.is_active.is_(True))
            .order_by(SubscriptionTier.sort_order, SubscriptionTier.id)
        )
        return list(self.session.execute(stmt).scalars())

    def list_packages(self) -> List[CreditPackage]:
        stmt = (
            select(CreditPackage)
            .where(CreditPackage.is_active.is_(True))
            .order_by(CreditPackage.sort_order, CreditPackage.id)
        )
        return list(self.session.execute(stmt).scalars())

    def get_tier(self, tier_id: Optional[str]) -> Optional[SubscriptionTier]:
        if not tier_id:
            return None
        return self.session.get(SubscriptionTier, tier_id)

    def get_package(self, package_id: Optional[str]) -> Optional[CreditPackage]:
        if not package_id:
            return None
        return self.session.get(CreditPackage, package_id)
