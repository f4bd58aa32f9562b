import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from config import Config
from models.catalog_model import CatalogModel
from models.credit_model import LedgerStore
from models.subscription_model import SubscriptionModel
from utils.credits import utcnow

logger = logging.getLogger('recommendation_controller')

MULTIPLE_PURCHASES_REASON = "You've made multiple credit purchases - a subscription offers better value"
GENERIC_SAVINGS_REASON = "Based on your usage pattern, a subscription could save you money"


@dataclass
class UpgradeRecommendation:
    recommended_tier: str
    reason: str
    potential_savings: int
    usage_pattern: str

    def to_dict(self):
        return asdict(self)


def usage_pattern(monthly_usage: float) -> str:
    if monthly_usage > 200:
        return 'heavy'
    if monthly_usage > 100:
        return 'moderate'
    return 'light'


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class UpgradeRecommender:
    """Suggests a subscription tier from the last two months of ledger activity.

    Selection is first-match over the catalog's `sort_order`, not best-match:
    reordering the catalog changes which tier is recommended.
    """

    def __init__(self, store: LedgerStore, catalog: CatalogModel, subscriptions: SubscriptionModel):
        self.store = store
        self.catalog = catalog
        self.subscriptions = subscriptions

    @classmethod
    def from_session(cls, session) -> 'UpgradeRecommender':
        return cls(LedgerStore(session), CatalogModel(session), SubscriptionModel(session))

    def get_upgrade_recommendation(self, user_id, now: Optional[datetime] = None) -> Optional[UpgradeRecommendation]:
        now = now or utcnow()
        window_days = Config.RECOMMENDATION_WINDOW_DAYS
        months = window_days / 30
        since = now - timedelta(days=window_days)

        with self.store.reading():
            transactions = self.store.transactions_since(str(user_id), since)
            if not transactions:
                return None
            tiers = self.catalog.list_tiers()

        purchases = [t for t in transactions if t.source_type == 'purchase']
        usage = [t for t in transactions if t.source_type == 'usage']
        total_purchased = sum(int(t.amount) for t in purchases)
        total_used = abs(sum(int(t.amount) for t in usage))
        monthly_usage = total_used / months
        monthly_spend = total_purchased / months

        for tier in tiers:
            if tier.id == Config.DEFAULT_TIER_ID or int(tier.price_cents or 0) <= 0:
                continue
            tier_price = tier.price_cents / 100
            if monthly_usage <= tier.monthly_credits and monthly_spend > tier_price:
                reason = MULTIPLE_PURCHASES_REASON if len(purchases) >= 2 else GENERIC_SAVINGS_REASON
                recommendation = UpgradeRecommendation(
                    recommended_tier=tier.id,
                    reason=reason,
                    potential_savings=_round_half_up(monthly_spend - tier_price),
                    usage_pattern=usage_pattern(monthly_usage),
                )
                logger.info("Recommending tier %s to user %s", tier.id, user_id)
                return recommendation
        return None

    def should_show_upgrade_prompt(self, user_id, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        since = now - timedelta(days=Config.UPGRADE_PROMPT_WINDOW_DAYS)
        with self.store.reading():
            if self.subscriptions.get_active(str(user_id)) is not None:
                return False
            purchases = self.store.transactions_since(str(user_id), since, source_type='purchase')
        return len(purchases) >= Config.UPGRADE_PROMPT_MIN_PURCHASES
