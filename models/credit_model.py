from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import Index, UniqueConstraint, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from database import db
from utils.credits import utcnow


TRANSACTION_TYPES = ('earned', 'spent', 'purchased', 'granted', 'expired', 'refunded')
GRANT_TRANSACTION_TYPES = ('earned', 'purchased', 'granted', 'refunded')
SOURCE_TYPES = ('subscription', 'purchase', 'usage', 'promotion', 'refund', 'migration', 'monthly_grant')


class CreditError(Exception):
    pass


class CreditValidationError(CreditError, ValueError):
    """Rejected input; nothing was written."""


class StoreUnavailableError(CreditError):
    """The ledger store could not be reached or the write could not be confirmed."""


class DuplicateOperationError(CreditError):
    """A write reused a correlation id that is already on the ledger."""

    def __init__(self, message: str, transaction: Optional['CreditTransaction'] = None):
        super().__init__(message)
        self.transaction = transaction


class LedgerIntegrityError(CreditError):
    """A write violated a constraint other than the duplicate guards."""

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


# Postgres constraint names and SQLite column lists that mean "already written"
DUPLICATE_CONSTRAINTS = (
    'uq_credit_tx_source',
    'credit_balances_pkey',
    'credit_transactions.user_id, credit_transactions.source_type, credit_transactions.source_id',
    'credit_balances.user_id',
)


def violated_constraint(exc: IntegrityError) -> str:
    """Best-effort name of the constraint behind an IntegrityError."""
    orig = getattr(exc, 'orig', None)
    diag = getattr(orig, 'diag', None)
    name = getattr(diag, 'constraint_name', None)
    if name:
        return name
    return str(orig if orig is not None else exc)


def is_duplicate_violation(exc: IntegrityError) -> bool:
    constraint = violated_constraint(exc)
    return any(marker in constraint for marker in DUPLICATE_CONSTRAINTS)


class CreditBalance(db.Model):
    __tablename__ = 'credit_balances'

    user_id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    current_balance: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_spent: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_purchased: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    subscription_tier_id: Mapped[Optional[str]] = mapped_column(
        db.String(50), db.ForeignKey('subscription_tiers.id', ondelete='SET NULL'), index=True
    )
    last_monthly_grant: Mapped[Optional[datetime]] = mapped_column(db.DateTime)
    # Sequence of the last ledger write for this user; bumped by every balance mutation
    tx_seq: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint('current_balance >= 0', name='ck_credit_balance_non_negative'),
    )

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'current_balance': int(self.current_balance or 0),
            'total_earned': int(self.total_earned or 0),
            'total_spent': int(self.total_spent or 0),
            'total_purchased': int(self.total_purchased or 0),
            'subscription_tier_id': self.subscription_tier_id,
            'last_monthly_grant': self.last_monthly_grant.isoformat() if self.last_monthly_grant else None,
        }


class CreditTransaction(db.Model):
    __tablename__ = 'credit_transactions'

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(db.Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    amount: Mapped[int] = mapped_column(db.Integer, nullable=False)  # signed; negative for spent
    balance_before: Mapped[int] = mapped_column(db.Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(db.Integer, nullable=False)
    source_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(db.String(255))
    description: Mapped[Optional[str]] = mapped_column(db.String(255))
    metadata_json: Mapped[Optional[dict]] = mapped_column('metadata', db.JSON)
    created_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'seq', name='uq_credit_tx_user_seq'),
        # NULL source_id never collides, so only correlated writes are deduplicated
        UniqueConstraint('user_id', 'source_type', 'source_id', name='uq_credit_tx_source'),
        db.CheckConstraint('balance_after = balance_before + amount', name='ck_credit_tx_balance_chain'),
        Index('ix_credit_tx_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'seq': self.seq,
            'transaction_type': self.transaction_type,
            'amount': int(self.amount),
            'balance_before': int(self.balance_before),
            'balance_after': int(self.balance_after),
            'source_type': self.source_type,
            'source_id': self.source_id,
            'description': self.description,
            'metadata': dict(self.metadata_json or {}),
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


def validate_amount(amount, *, allow_zero: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise CreditValidationError(f"Credit amount must be an integer, got {amount!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise CreditValidationError(f"Credit amount must be {qualifier}, got {amount}")
    return amount


def validate_source_type(source_type: str) -> str:
    if source_type not in SOURCE_TYPES:
        raise CreditValidationError(f"Unknown source type: {source_type!r}")
    return source_type


def validate_grant_type(transaction_type: str) -> str:
    if transaction_type not in GRANT_TRANSACTION_TYPES:
        raise CreditValidationError(f"Transaction type {transaction_type!r} cannot grant credits")
    return transaction_type


class LedgerStore:
    """Durable balance records and the append-only transaction log.

    Built around an explicitly passed SQLAlchemy session. Every balance
    mutation is a single UPDATE statement: the conditional debit only matches
    while `current_balance >= amount`, so two concurrent spends can never both
    be covered by the same credits. The row stays write-locked until commit,
    which is where the transaction row is appended, so `seq`,
    `balance_before` and `balance_after` follow one total order per user.
    """

    def __init__(self, session):
        self.session = session

    @contextmanager
    def atomic(self):
        """Commit on success; map database failures onto ledger errors."""
        try:
            yield self
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            constraint = violated_constraint(exc)
            if is_duplicate_violation(exc):
                raise DuplicateOperationError(f"Ledger write conflicts with an existing record ({constraint})") from exc
            raise LedgerIntegrityError(f"Ledger write violated {constraint}", constraint=constraint) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailableError("Ledger store could not confirm the write") from exc
        except Exception:
            self.session.rollback()
            raise

    @contextmanager
    def reading(self):
        try:
            yield self
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailableError("Ledger store could not be read") from exc

    def get_balance_row(self, user_id: str) -> Optional[CreditBalance]:
        return self.session.get(CreditBalance, user_id, populate_existing=True)

    def insert_balance(
        self,
        user_id: str,
        initial: int,
        tier_id: Optional[str],
        created_at: Optional[datetime] = None,
    ) -> CreditBalance:
        created_at = created_at or utcnow()
        row = CreditBalance(
            user_id=user_id,
            current_balance=initial,
            total_earned=initial,
            total_spent=0,
            total_purchased=0,
            subscription_tier_id=tier_id,
            # The welcome credits stand in for the first cycle's allotment
            last_monthly_grant=created_at,
            tx_seq=1 if initial > 0 else 0,
            created_at=created_at,
            updated_at=created_at,
        )
        self.session.add(row)
        # Surface a primary key collision before the welcome transaction is queued
        self.session.flush()
        return row

    def _snapshot(self, user_id: str) -> Tuple[int, int]:
        stmt = select(CreditBalance.current_balance, CreditBalance.tx_seq).where(CreditBalance.user_id == user_id)
        row = self.session.execute(stmt).one()
        return int(row.current_balance), int(row.tx_seq)

    def try_debit(self, user_id: str, amount: int) -> Optional[Tuple[int, int]]:
        """Conditionally take `amount`; returns (balance_after, seq) or None when not covered."""
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id, CreditBalance.current_balance >= amount)
            .values(
                current_balance=CreditBalance.current_balance - amount,
                total_spent=CreditBalance.total_spent + amount,
                tx_seq=CreditBalance.tx_seq + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            return None
        return self._snapshot(user_id)

    def credit(self, user_id: str, amount: int, transaction_type: str) -> Tuple[int, int]:
        """Add `amount` and bump the matching lifetime counter; returns (balance_after, seq)."""
        counter = CreditBalance.total_purchased if transaction_type == 'purchased' else CreditBalance.total_earned
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values({
                CreditBalance.current_balance: CreditBalance.current_balance + amount,
                counter: counter + amount,
                CreditBalance.tx_seq: CreditBalance.tx_seq + 1,
                CreditBalance.updated_at: utcnow(),
            })
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            raise StoreUnavailableError(f"No balance record for user {user_id}")
        return self._snapshot(user_id)

    def compare_and_set(
        self,
        user_id: str,
        expected_seq: int,
        new_balance: int,
        earned_delta: int,
        granted_at: datetime,
    ) -> bool:
        """Overwrite the balance only if no other write happened since `expected_seq`."""
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id, CreditBalance.tx_seq == expected_seq)
            .values(
                current_balance=new_balance,
                total_earned=CreditBalance.total_earned + earned_delta,
                tx_seq=expected_seq + 1,
                last_monthly_grant=granted_at,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def set_tier(self, user_id: str, tier_id: Optional[str]) -> bool:
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(subscription_tier_id=tier_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def start_grant_cycle(self, user_id: str, at: Optional[datetime]) -> bool:
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(last_monthly_grant=at, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def append_transaction(
        self,
        user_id: str,
        seq: int,
        transaction_type: str,
        amount: int,
        balance_after: int,
        source_type: str,
        source_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> CreditTransaction:
        tx = CreditTransaction(
            user_id=user_id,
            seq=seq,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_after - amount,
            balance_after=balance_after,
            source_type=source_type,
            source_id=source_id,
            description=description,
            metadata_json=metadata or {},
        )
        self.session.add(tx)
        return tx

    def find_by_source(self, user_id: str, source_type: str, source_id: Optional[str]) -> Optional[CreditTransaction]:
        if source_id is None:
            return None
        stmt = select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.source_type == source_type,
            CreditTransaction.source_id == source_id,
        )
        return self.session.execute(stmt).scalars().first()

    def list_transactions(self, user_id: str, limit: int, offset: int) -> List[CreditTransaction]:
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.seq.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.execute(stmt).scalars())

    def transactions_since(self, user_id: str, since: datetime, source_type: Optional[str] = None) -> List[CreditTransaction]:
        stmt = select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.created_at >= since,
        )
        if source_type is not None:
            stmt = stmt.where(CreditTransaction.source_type == source_type)
        return list(self.session.execute(stmt.order_by(CreditTransaction.seq)).scalars())

    def users_due_for_monthly_grant(self, cutoff: datetime) -> List[str]:
        """Users on a tier with a monthly allotment whose last grant is at or before `cutoff`."""
        from models.catalog_model import SubscriptionTier

        stmt = (
            select(CreditBalance.user_id)
            .join(SubscriptionTier, SubscriptionTier.id == CreditBalance.subscription_tier_id)
            .where(
                SubscriptionTier.is_active.is_(True),
                SubscriptionTier.monthly_credits > 0,
                or_(CreditBalance.last_monthly_grant.is_(None), CreditBalance.last_monthly_grant <= cutoff),
            )
            .order_by(CreditBalance.user_id)
        )
        return list(self.session.execute(stmt).scalars())

    def transactions_in_order(self, user_id: str) -> List[CreditTransaction]:
        stmt = select(CreditTransaction).where(CreditTransaction.user_id == user_id).order_by(CreditTransaction.seq)
        return list(self.session.execute(stmt).scalars())
