import logging
from datetime import datetime, timedelta
from typing import List, Optional

from config import Config
from models.catalog_model import CatalogModel
from models.credit_model import (
    CreditBalance,
    CreditTransaction,
    CreditValidationError,
    DuplicateOperationError,
    LedgerStore,
    StoreUnavailableError,
    validate_amount,
    validate_grant_type,
    validate_source_type,
)
from utils.credits import utcnow

logger = logging.getLogger('ledger_controller')

MAX_PAGE_SIZE = 200


class CreditLedger:
    """Spend/grant engine over a `LedgerStore`.

    `spend` and `grant` are the only code paths that move a balance. Both run
    as one database transaction: a single guarded UPDATE followed by the
    append of the matching transaction row. A declined spend writes nothing.
    Store failures raise `StoreUnavailableError` and are never reported as
    an insufficient balance.
    """

    def __init__(self, store: LedgerStore, catalog: Optional[CatalogModel] = None):
        self.store = store
        self.catalog = catalog or CatalogModel(store.session)

    @classmethod
    def from_session(cls, session) -> 'CreditLedger':
        return cls(LedgerStore(session), CatalogModel(session))

    def get_balance(self, user_id) -> CreditBalance:
        """Return the user's balance record, creating it with the welcome grant on first access."""
        user_id = _validate_user(user_id)
        with self.store.reading():
            row = self.store.get_balance_row(user_id)
        if row is not None:
            return row
        return self._create_balance(user_id)

    def has_sufficient_credits(self, user_id, required: int) -> bool:
        validate_amount(required, allow_zero=True)
        balance = self.get_balance(user_id)
        return int(balance.current_balance) >= required

    def spend(
        self,
        user_id,
        amount: int,
        source_type: str = 'usage',
        source_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> bool:
        """Debit `amount` credits. Returns False, writing nothing, when the balance does not cover it."""
        user_id = _validate_user(user_id)
        validate_amount(amount)
        validate_source_type(source_type)
        self.get_balance(user_id)
        self.reject_duplicate(user_id, source_type, source_id)

        try:
            with self.store.atomic():
                snapshot = self.store.try_debit(user_id, amount)
                if snapshot is None:
                    logger.info("Spend of %s credits declined for user %s: insufficient balance", amount, user_id)
                    return False
                balance_after, seq = snapshot
                self.store.append_transaction(
                    user_id,
                    seq,
                    'spent',
                    -amount,
                    balance_after,
                    source_type,
                    source_id=source_id,
                    description=description or f"Spent {amount} credits",
                )
        except DuplicateOperationError as exc:
            raise self.duplicate_error(user_id, source_type, source_id) from exc

        logger.info("User %s spent %s credits (%s), balance now %s", user_id, amount, source_type, balance_after)
        return True

    def grant(
        self,
        user_id,
        amount: int,
        transaction_type: str = 'granted',
        source_type: str = 'promotion',
        source_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        self._apply_grant(user_id, amount, transaction_type, source_type, source_id, description, metadata)
        return True

    def _apply_grant(
        self,
        user_id,
        amount: int,
        transaction_type: str,
        source_type: str,
        source_id: Optional[str],
        description: Optional[str],
        metadata: Optional[dict] = None,
    ) -> CreditTransaction:
        user_id = _validate_user(user_id)
        validate_amount(amount)
        validate_grant_type(transaction_type)
        validate_source_type(source_type)
        self.get_balance(user_id)
        self.reject_duplicate(user_id, source_type, source_id)

        try:
            with self.store.atomic():
                balance_after, seq = self.store.credit(user_id, amount, transaction_type)
                tx = self.store.append_transaction(
                    user_id,
                    seq,
                    transaction_type,
                    amount,
                    balance_after,
                    source_type,
                    source_id=source_id,
                    description=description or f"Added {amount} credits",
                    metadata=metadata,
                )
        except DuplicateOperationError as exc:
            raise self.duplicate_error(user_id, source_type, source_id) from exc

        logger.info(
            "Granted %s credits to user %s (%s/%s), balance now %s",
            amount, user_id, transaction_type, source_type, balance_after,
        )
        return tx

    def apply_monthly_grant(self, user_id, now: Optional[datetime] = None) -> Optional[CreditTransaction]:
        """Replenish the user's tier allotment once per cycle.

        Unused credits above the tier's rollover cap are forfeited before the
        new allotment is added. The rewrite is a compare-and-swap on the
        user's sequence, retried when a concurrent spend or grant got in first.
        """
        now = now or utcnow()
        balance = self.get_balance(user_id)
        user_id = balance.user_id
        with self.store.reading():
            tier = self.catalog.get_tier(balance.subscription_tier_id)
        if tier is None or not tier.is_active or int(tier.monthly_credits or 0) <= 0:
            logger.debug("User %s has no tier with a monthly allotment; skipping", user_id)
            return None

        cycle = timedelta(days=Config.MONTHLY_GRANT_CYCLE_DAYS)
        source_id = f"monthly:{now:%Y-%m-%d}"
        tier_id, tier_name = tier.id, tier.name
        monthly_credits = int(tier.monthly_credits)
        max_rollover = max(0, int(tier.max_rollover or 0))

        for attempt in range(Config.MONTHLY_GRANT_MAX_RETRIES):
            with self.store.reading():
                row = self.store.get_balance_row(user_id)
            if row.last_monthly_grant is not None and now - row.last_monthly_grant < cycle:
                return None

            current = int(row.current_balance)
            seq = int(row.tx_seq)
            kept = min(current, max_rollover)
            new_balance = kept + monthly_credits
            delta = new_balance - current

            try:
                with self.store.atomic():
                    if not self.store.compare_and_set(user_id, seq, new_balance, monthly_credits, now):
                        logger.info("Monthly grant for user %s raced a ledger write (attempt %s)", user_id, attempt + 1)
                        continue
                    tx = self.store.append_transaction(
                        user_id,
                        seq + 1,
                        'granted',
                        delta,
                        new_balance,
                        'monthly_grant',
                        source_id=source_id,
                        description=f"Monthly {tier_name} credits",
                        metadata={
                            'tier_id': tier_id,
                            'monthly_credits': monthly_credits,
                            'max_rollover': max_rollover,
                            'forfeited': current - kept,
                        },
                    )
            except DuplicateOperationError as exc:
                raise self.duplicate_error(user_id, 'monthly_grant', source_id) from exc

            logger.info(
                "Monthly grant for user %s: %s -> %s (forfeited %s)",
                user_id, current, new_balance, current - kept,
            )
            return tx

        raise StoreUnavailableError(
            f"Monthly grant for user {user_id} not applied after {Config.MONTHLY_GRANT_MAX_RETRIES} attempts"
        )

    def list_transactions(self, user_id, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        user_id = _validate_user(user_id)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise CreditValidationError("limit must be a positive integer")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise CreditValidationError("offset must be a non-negative integer")
        with self.store.reading():
            return self.store.list_transactions(user_id, min(limit, MAX_PAGE_SIZE), offset)

    def update_subscription_tier(self, user_id, tier_id: Optional[str]) -> bool:
        """Associate the user with a tier. Granting for the change is the caller's job."""
        if tier_id is not None:
            with self.store.reading():
                tier = self.catalog.get_tier(tier_id)
            if tier is None:
                raise CreditValidationError(f"Unknown subscription tier: {tier_id!r}")
        balance = self.get_balance(user_id)
        with self.store.atomic():
            updated = self.store.set_tier(balance.user_id, tier_id)
        logger.info("User %s moved to tier %s", balance.user_id, tier_id)
        return updated

    def process_credit_purchase(self, user_id, package_id: str, transaction_id: str) -> CreditTransaction:
        """Grant a package's credits for a purchase the payment provider already verified."""
        if not transaction_id:
            raise CreditValidationError("Purchase transaction id is required")
        with self.store.reading():
            package = self.catalog.get_package(package_id)
        if package is None or not package.is_active:
            raise CreditValidationError(f"Unknown credit package: {package_id!r}")
        return self._apply_grant(
            user_id,
            package.total_credits,
            'purchased',
            'purchase',
            str(transaction_id),
            f"Purchased {package.name} - {package.total_credits} credits",
            metadata={'package_id': package.id, 'price_cents': int(package.price_cents)},
        )

    def _create_balance(self, user_id: str) -> CreditBalance:
        initial = int(Config.INITIAL_CREDITS)
        tier_id = Config.DEFAULT_TIER_ID
        try:
            with self.store.atomic():
                self.store.insert_balance(user_id, initial, tier_id)
                if initial > 0:
                    self.store.append_transaction(
                        user_id,
                        1,
                        'granted',
                        initial,
                        initial,
                        'migration',
                        source_id=tier_id,
                        description='Welcome credits for new user',
                    )
            logger.info("Initialized credit balance for user %s with %s credits", user_id, initial)
        except DuplicateOperationError:
            logger.info("Credit balance for user %s was created concurrently; re-reading", user_id)

        with self.store.reading():
            row = self.store.get_balance_row(user_id)
        if row is None:
            raise StoreUnavailableError(f"Credit balance for user {user_id} could not be created")
        return row

    def reject_duplicate(self, user_id: str, source_type: str, source_id: Optional[str]):
        if source_id is None:
            return
        with self.store.reading():
            existing = self.store.find_by_source(user_id, source_type, source_id)
        if existing is not None:
            raise DuplicateOperationError(
                f"{source_type} operation {source_id!r} already applied for user {user_id}",
                transaction=existing,
            )

    def duplicate_error(self, user_id: str, source_type: str, source_id: Optional[str]) -> DuplicateOperationError:
        with self.store.reading():
            existing = self.store.find_by_source(user_id, source_type, source_id)
        logger.warning("Rejected duplicate %s operation %s for user %s", source_type, source_id, user_id)
        return DuplicateOperationError(
            f"{source_type} operation {source_id!r} already applied for user {user_id}",
            transaction=existing,
        )


def _validate_user(user_id) -> str:
    if user_id is None or isinstance(user_id, bool):
        raise CreditValidationError("user_id is required")
    value = str(user_id).strip()
    if not value:
        raise CreditValidationError("user_id is required")
    return value
