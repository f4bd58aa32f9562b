import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import Config
from models.credit_model import (
    CreditValidationError,
    DuplicateOperationError,
    StoreUnavailableError,
    validate_amount,
)
from models.usage_model import MessageCost, UsageModel
from utils.credits import calculate_required_credits, utcnow

logger = logging.getLogger('analytics_controller')


@dataclass
class DailyUsage:
    date: str
    credits: int = 0
    messages: int = 0


@dataclass
class AvatarUsage:
    avatar_id: str
    credits: int = 0
    messages: int = 0


@dataclass
class CreditUsageStats:
    total_messages: int = 0
    total_credits_used: int = 0
    average_credits_per_message: float = 0.0
    total_api_cost_cents: float = 0.0
    most_used_avatar: str = ''
    most_used_provider: str = ''
    usage_by_day: List[DailyUsage] = field(default_factory=list)
    usage_by_avatar: List[AvatarUsage] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def _mode(values: Iterable[str]) -> str:
    # Ties go to whichever candidate Counter saw first; callers must not rely on it
    counts = Counter(values)
    if not counts:
        return ''
    return counts.most_common(1)[0][0]


def summarize_costs(rows: List[MessageCost]) -> CreditUsageStats:
    """Aggregate message costs into usage stats."""
    if not rows:
        return CreditUsageStats()

    total_messages = len(rows)
    total_credits = sum(int(r.credits_charged or 0) for r in rows)
    total_cost = sum(float(r.api_cost_cents or 0) for r in rows)

    by_day: dict[str, DailyUsage] = {}
    by_avatar: dict[str, AvatarUsage] = {}
    for r in rows:
        day = r.created_at.date().isoformat()
        day_bucket = by_day.setdefault(day, DailyUsage(date=day))
        day_bucket.credits += int(r.credits_charged or 0)
        day_bucket.messages += 1

        avatar_bucket = by_avatar.setdefault(r.avatar_id, AvatarUsage(avatar_id=r.avatar_id))
        avatar_bucket.credits += int(r.credits_charged or 0)
        avatar_bucket.messages += 1

    return CreditUsageStats(
        total_messages=total_messages,
        total_credits_used=total_credits,
        average_credits_per_message=total_credits / total_messages,
        total_api_cost_cents=total_cost,
        most_used_avatar=_mode(r.avatar_id for r in rows),
        most_used_provider=_mode(r.provider for r in rows),
        usage_by_day=list(by_day.values()),
        usage_by_avatar=list(by_avatar.values()),
    )


class UsageAnalytics:
    """Per-day and per-avatar usage aggregates over message costs.

    Reads are advisory and may trail the latest ledger writes.
    """

    def __init__(self, usage: UsageModel):
        self.usage = usage

    @classmethod
    def from_session(cls, session) -> 'UsageAnalytics':
        return cls(UsageModel(session))

    def get_usage_stats(self, user_id, days_back: Optional[int] = None, now: Optional[datetime] = None) -> CreditUsageStats:
        if days_back is None:
            days_back = Config.USAGE_STATS_DEFAULT_DAYS
        if isinstance(days_back, bool) or not isinstance(days_back, int) or days_back < 0:
            raise CreditValidationError("days_back must be a non-negative integer")
        now = now or utcnow()
        start = now - timedelta(days=days_back)
        try:
            rows = self.usage.list_between(str(user_id), start, now)
        except SQLAlchemyError as exc:
            self.usage.session.rollback()
            raise StoreUnavailableError("Usage history could not be read") from exc
        return summarize_costs(rows)

    def record_message_cost(
        self,
        message_id: str,
        user_id,
        avatar_id: str,
        conversation_id: Optional[str] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        credits_charged: Optional[int] = None,
        api_cost_cents: float = 0.0,
        provider: str = 'claude',
        model_name: str = 'claude-3-5-sonnet',
        created_at: Optional[datetime] = None,
    ) -> MessageCost:
        if not message_id or not avatar_id:
            raise CreditValidationError("message_id and avatar_id are required")
        validate_amount(input_tokens, allow_zero=True)
        validate_amount(output_tokens, allow_zero=True)
        if credits_charged is None:
            credits_charged = calculate_required_credits(input_tokens, output_tokens)
        validate_amount(credits_charged, allow_zero=True)
        if api_cost_cents is None or float(api_cost_cents) < 0:
            raise CreditValidationError("api_cost_cents must be non-negative")

        cost = MessageCost(
            message_id=str(message_id),
            user_id=str(user_id),
            conversation_id=conversation_id,
            avatar_id=str(avatar_id),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            credits_charged=credits_charged,
            api_cost_cents=float(api_cost_cents),
            provider=provider,
            model_name=model_name,
            created_at=created_at or utcnow(),
        )
        session = self.usage.session
        try:
            self.usage.add(cost)
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise DuplicateOperationError(f"Cost for message {message_id!r} already recorded") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Error recording message cost %s: %s", message_id, exc)
            raise StoreUnavailableError("Message cost could not be recorded") from exc
        logger.debug("Recorded cost of message %s for user %s", message_id, user_id)
        return cost
