from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import Index, select
from sqlalchemy.orm import Mapped, mapped_column

from database import db
from utils.credits import utcnow


class MessageCost(db.Model):
    """Token and credit cost of one billable AI message.

    Analytics only; the transaction log stays authoritative for balances.
    """
    __tablename__ = 'message_costs'

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(db.String(64), nullable=False)
    conversation_id: Mapped[Optional[str]] = mapped_column(db.String(255))
    avatar_id: Mapped[str] = mapped_column(db.String(100), nullable=False)
    input_tokens: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    credits_charged: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    api_cost_cents: Mapped[float] = mapped_column(db.Float, nullable=False, default=0.0)
    provider: Mapped[str] = mapped_column(db.String(50), nullable=False)
    model_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_message_costs_user_created', 'user_id', 'created_at'),
    )

    @property
    def total_tokens(self) -> int:
        return int(self.input_tokens or 0) + int(self.output_tokens or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'message_id': self.message_id,
            'user_id': self.user_id,
            'conversation_id': self.conversation_id,
            'avatar_id': self.avatar_id,
            'input_tokens': int(self.input_tokens or 0),
            'output_tokens': int(self.output_tokens or 0),
            'total_tokens': self.total_tokens,
            'credits_charged': int(self.credits_charged or 0),
            'api_cost_cents': float(self.api_cost_cents or 0),
            'provider': self.provider,
            'model_name': self.model_name,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class UsageModel:
    """Data access layer for message costs"""

    def __init__(self, session):
        self.session = session

    def add(self, cost: MessageCost) -> MessageCost:
        self.session.add(cost)
        return cost

    def get_by_message_id(self, message_id: str) -> Optional[MessageCost]:
        stmt = select(MessageCost).where(MessageCost.message_id == message_id)
        return self.session.execute(stmt).scalars().first()

    def list_between(self, user_id: str, start: datetime, end: datetime) -> List[MessageCost]:
        stmt = (
            select(MessageCost)
            .where(
                MessageCost.user_id == user_id,
                MessageCost.created_at >= start,
                MessageCost.created_at <= end,
            )
            .order_by(MessageCost.created_at.desc())
        )
        return list(self.session.execute(stmt).scalars())
