import logging
from typing import Optional

from controllers.analytics_controller import UsageAnalytics
from controllers.ledger_controller import MAX_PAGE_SIZE, CreditLedger
from controllers.recommendation_controller import UpgradeRecommender
from controllers.subscription_controller import SubscriptionController
from models.subscription_model import SubscriptionModel
from models.credit_model import (
    CreditValidationError,
    DuplicateOperationError,
    StoreUnavailableError,
)
from utils.credits import get_credit_config

logger = logging.getLogger('credit_controller')

STORE_UNAVAILABLE_MESSAGE = "We couldn't verify your credit balance. Please try again."
INSUFFICIENT_CREDITS_MESSAGE = "You're out of credits. Upgrade your plan or buy more credits."
GENERIC_UPGRADE_MESSAGE = "Upgrade to a subscription for a monthly credit allotment."


class CreditController:
    """Facade consumed by the application layer.

    Every method returns the usual `(success, payload, status_code)` tuple
    with plain JSON-ready payloads. Declined spends (402) are kept apart from
    store failures (503) so callers never mistake "no credits" for "unknown".
    """

    def __init__(
        self,
        ledger: CreditLedger,
        analytics: UsageAnalytics,
        recommender: UpgradeRecommender,
        subscriptions: SubscriptionController,
    ):
        self.ledger = ledger
        self.analytics = analytics
        self.recommender = recommender
        self.subscriptions = subscriptions

    @classmethod
    def from_session(cls, session) -> 'CreditController':
        ledger = CreditLedger.from_session(session)
        return cls(
            ledger,
            UsageAnalytics.from_session(session),
            UpgradeRecommender.from_session(session),
            SubscriptionController(ledger, SubscriptionModel(session)),
        )

    def _guarded(self, action: str, fn):
        try:
            return fn()
        except CreditValidationError as exc:
            return False, {"error": str(exc)}, 400
        except DuplicateOperationError as exc:
            payload = {"error": str(exc)}
            if exc.transaction is not None:
                payload["transaction"] = exc.transaction.to_dict()
            return False, payload, 409
        except StoreUnavailableError as exc:
            logger.error("Ledger store unavailable during %s: %s", action, exc)
            return False, {"error": STORE_UNAVAILABLE_MESSAGE, "retryable": True}, 503
        except Exception:
            logger.exception("Unexpected error during %s", action)
            self.ledger.store.session.rollback()
            return False, {"error": f"Unable to {action} at this time."}, 500

    def refresh_balance(self, user_id):
        def _run():
            balance = self.ledger.get_balance(user_id)
            payload = balance.to_dict()
            with self.ledger.store.reading():
                tier = self.ledger.catalog.get_tier(balance.subscription_tier_id)
            payload["tier"] = tier.to_dict() if tier else None
            payload.update(get_credit_config())
            return True, payload, 200
        return self._guarded("load your credit balance", _run)

    def has_sufficient_credits(self, user_id, required: int):
        def _run():
            sufficient = self.ledger.has_sufficient_credits(user_id, required)
            return True, {"sufficient": sufficient, "required": required}, 200
        return self._guarded("check your credits", _run)

    def spend(
        self,
        user_id,
        amount: int,
        source_type: str = 'usage',
        source_id: Optional[str] = None,
        description: Optional[str] = None,
    ):
        def _run():
            try:
                spent = self.ledger.spend(user_id, amount, source_type, source_id, description)
            except DuplicateOperationError as exc:
                prior = exc.transaction
                if prior is None or prior.transaction_type != 'spent':
                    raise
                # A declined spend writes no row, so a prior row means the retry already succeeded
                balance = self.ledger.get_balance(user_id)
                return True, {
                    "spent": -int(prior.amount),
                    "balance": int(balance.current_balance),
                    "duplicate": True,
                    "transaction": prior.to_dict(),
                }, 200

            balance = self.ledger.get_balance(user_id)
            if not spent:
                return False, {
                    "error": INSUFFICIENT_CREDITS_MESSAGE,
                    "code": "insufficient_credits",
                    "required": amount,
                    "balance": int(balance.current_balance),
                }, 402
            return True, {"spent": amount, "balance": int(balance.current_balance), "duplicate": False}, 200
        return self._guarded("spend credits", _run)

    def grant(
        self,
        user_id,
        amount: int,
        transaction_type: str = 'granted',
        source_type: str = 'promotion',
        source_id: Optional[str] = None,
        description: Optional[str] = None,
    ):
        def _run():
            self.ledger.grant(user_id, amount, transaction_type, source_type, source_id, description)
            balance = self.ledger.get_balance(user_id)
            return True, {"granted": amount, "balance": int(balance.current_balance)}, 200
        return self._guarded("grant credits", _run)

    def process_purchase(self, user_id, package_id: str, transaction_id: str):
        def _run():
            tx = self.ledger.process_credit_purchase(user_id, package_id, transaction_id)
            return True, {"transaction": tx.to_dict(), "balance": int(tx.balance_after)}, 200
        return self._guarded("process the purchase", _run)

    def apply_monthly_grant(self, user_id):
        def _run():
            tx = self.ledger.apply_monthly_grant(user_id)
            return True, {"applied": tx is not None, "transaction": tx.to_dict() if tx else None}, 200
        return self._guarded("apply the monthly grant", _run)

    def update_tier(self, user_id, tier_id: Optional[str]):
        def _run():
            self.ledger.update_subscription_tier(user_id, tier_id)
            return True, {"subscription_tier_id": tier_id}, 200
        return self._guarded("update the subscription tier", _run)

    def list_transactions(self, user_id, limit: int = 50, offset: int = 0):
        def _run():
            items = [t.to_dict() for t in self.ledger.list_transactions(user_id, limit, offset)]
            return True, {
                "items": items,
                "limit": limit,
                "offset": offset,
                "next_offset": offset + len(items) if len(items) == min(limit, MAX_PAGE_SIZE) else None,
            }, 200
        return self._guarded("load your credit history", _run)

    def list_tiers(self):
        def _run():
            with self.ledger.store.reading():
                tiers = self.ledger.catalog.list_tiers()
            return True, {"tiers": [t.to_dict() for t in tiers]}, 200
        return self._guarded("load subscription tiers", _run)

    def list_packages(self):
        def _run():
            with self.ledger.store.reading():
                packages = self.ledger.catalog.list_packages()
            return True, {"packages": [p.to_dict() for p in packages]}, 200
        return self._guarded("load credit packages", _run)

    def get_usage_stats(self, user_id, days_back: Optional[int] = None):
        def _run():
            stats = self.analytics.get_usage_stats(user_id, days_back)
            return True, stats.to_dict(), 200
        return self._guarded("load usage statistics", _run)

    def record_message_cost(self, user_id, **fields):
        def _run():
            cost = self.analytics.record_message_cost(user_id=user_id, **fields)
            return True, cost.to_dict(), 201
        return self._guarded("record the message cost", _run)

    def get_recommendation(self, user_id):
        def _run():
            recommendation = self.recommender.get_upgrade_recommendation(user_id)
            should_show = self.recommender.should_show_upgrade_prompt(user_id)
            payload = {
                "recommendation": recommendation.to_dict() if recommendation else None,
                "should_show_prompt": should_show,
                "message": None,
            }
            if recommendation is not None:
                payload["message"] = recommendation.reason
            elif should_show:
                payload["message"] = GENERIC_UPGRADE_MESSAGE
            return True, payload, 200
        return self._guarded("load your upgrade recommendation", _run)

    def create_subscription(self, user_id, tier_id: str, transaction_id: str):
        def _run():
            subscription = self.subscriptions.create_subscription(user_id, tier_id, transaction_id)
            balance = self.ledger.get_balance(user_id)
            return True, {
                "subscription": subscription.to_dict(),
                "balance": int(balance.current_balance),
            }, 201
        return self._guarded("create the subscription", _run)

    def cancel_subscription(self, user_id):
        def _run():
            if not self.subscriptions.cancel_subscription(user_id):
                return False, {"error": "No active subscription"}, 404
            return True, {"cancelled": True}, 200
        return self._guarded("cancel the subscription", _run)
