import logging
from datetime import datetime, timedelta
from typing import Optional

from config import Config
from controllers.ledger_controller import CreditLedger
from models.credit_model import CreditValidationError, DuplicateOperationError
from models.subscription_model import SubscriptionModel, UserSubscription
from utils.credits import utcnow

logger = logging.getLogger('subscription_controller')


class SubscriptionController:
    """Creates and cancels recurring subscriptions.

    Called once the payment provider has verified the purchase, with that
    purchase's transaction id as the correlation key. Creation grants the
    tier's allotment a single time and starts the monthly cycle; later
    allotments come from `CreditLedger.apply_monthly_grant`. Cancelling moves
    the user back to the default tier so the paid allotment stops.
    """

    def __init__(self, ledger: CreditLedger, subscriptions: SubscriptionModel):
        self.ledger = ledger
        self.subscriptions = subscriptions

    @classmethod
    def from_session(cls, session) -> 'SubscriptionController':
        return cls(CreditLedger.from_session(session), SubscriptionModel(session))

    def get_active_subscription(self, user_id) -> Optional[UserSubscription]:
        with self.ledger.store.reading():
            return self.subscriptions.get_active(str(user_id))

    def create_subscription(
        self,
        user_id,
        tier_id: str,
        transaction_id: str,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        if not transaction_id:
            raise CreditValidationError("Subscription transaction id is required")
        transaction_id = str(transaction_id)
        now = now or utcnow()
        with self.ledger.store.reading():
            tier = self.ledger.catalog.get_tier(tier_id)
        if tier is None or not tier.is_active:
            raise CreditValidationError(f"Unknown subscription tier: {tier_id!r}")
        tier_id = tier.id
        monthly_credits = int(tier.monthly_credits or 0)
        tier_name = tier.name

        balance = self.ledger.get_balance(user_id)
        user_id = balance.user_id
        self.ledger.reject_duplicate(user_id, 'subscription', transaction_id)
        period_end = now + timedelta(days=Config.SUBSCRIPTION_PERIOD_DAYS)

        store = self.ledger.store
        try:
            with store.atomic():
                replaced = self.subscriptions.cancel_active(user_id)
                subscription = self.subscriptions.add(UserSubscription(
                    user_id=user_id,
                    tier_id=tier_id,
                    status='active',
                    current_period_start=now,
                    current_period_end=period_end,
                    next_billing_date=period_end,
                    credits_allocated=monthly_credits,
                    credits_used=0,
                ))
                store.set_tier(user_id, tier_id)
                store.start_grant_cycle(user_id, now)
                if monthly_credits > 0:
                    balance_after, seq = store.credit(user_id, monthly_credits, 'granted')
                    store.append_transaction(
                        user_id,
                        seq,
                        'granted',
                        monthly_credits,
                        balance_after,
                        'subscription',
                        source_id=transaction_id,
                        description=f"{tier_name} subscription credits",
                        metadata={'tier_id': tier_id, 'subscription_id': subscription.id},
                    )
        except DuplicateOperationError as exc:
            raise self.ledger.duplicate_error(user_id, 'subscription', transaction_id) from exc

        if replaced:
            logger.info("Replaced %s active subscription(s) for user %s", replaced, user_id)
        logger.info("User %s subscribed to tier %s (%s credits)", user_id, tier_id, monthly_credits)
        return subscription

    def cancel_subscription(self, user_id) -> bool:
        """Cancel the active subscription and fall back to the default tier.

        Credits already granted stay on the balance.
        """
        user_id = str(user_id)
        store = self.ledger.store
        with store.atomic():
            cancelled = self.subscriptions.cancel_active(user_id)
            if cancelled:
                store.set_tier(user_id, Config.DEFAULT_TIER_ID)
        if cancelled:
            logger.info("Cancelled subscription for user %s; tier reset to %s", user_id, Config.DEFAULT_TIER_ID)
        return cancelled > 0
