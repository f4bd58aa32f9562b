import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

import jwt
import pytest

# Add the application root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Point the app at a throwaway SQLite file before config is imported
_DB_DIR = tempfile.mkdtemp(prefix="credit-ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'ledger.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_API_KEYS"] = "test-admin-key"

from app import create_app  # noqa: E402
from database import db  # noqa: E402
from models.catalog_model import CreditPackage, SubscriptionTier  # noqa: E402


@pytest.fixture(scope="session")
def app():
    """Flask application fixture backed by the SQLite test database"""
    return create_app(testing=True)


@pytest.fixture(autouse=True)
def clean_database(app):
    yield
    with app.app_context():
        db.session.rollback()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()


@pytest.fixture
def session(app):
    with app.app_context():
        yield db.session


@pytest.fixture
def client(app):
    """Flask test client fixture"""
    with app.test_client() as test_client:
        with app.app_context():
            yield test_client


@pytest.fixture
def catalog(session):
    """Seed the tiers and packages the app ships with, plus a rollover test tier."""
    tiers = [
        SubscriptionTier(id="free", name="Free", monthly_credits=10, max_rollover=10, price_cents=0, sort_order=0),
        SubscriptionTier(id="basic", name="Basic", monthly_credits=150, max_rollover=75, price_cents=999, sort_order=1),
        SubscriptionTier(id="premium", name="Premium", monthly_credits=400, max_rollover=200, price_cents=1999, sort_order=2),
        SubscriptionTier(id="plus", name="Plus", monthly_credits=200, max_rollover=50, price_cents=1499, sort_order=5),
        SubscriptionTier(id="legacy", name="Legacy", monthly_credits=300, max_rollover=0, price_cents=500,
                         sort_order=9, is_active=False),
    ]
    packages = [
        CreditPackage(id="starter", name="Starter Pack", credits=50, bonus_credits=0, price_cents=499, sort_order=0),
        CreditPackage(id="popular", name="Popular Pack", credits=250, bonus_credits=50, price_cents=1999, sort_order=1),
        CreditPackage(id="retired", name="Retired Pack", credits=10, bonus_credits=0, price_cents=99,
                      sort_order=2, is_active=False),
    ]
    session.add_all(tiers + packages)
    session.commit()
    return {"tiers": {t.id: t for t in tiers}, "packages": {p.id: p for p in packages}}


def make_token(user_id, token_type="access", expires_in=3600, secret="test-secret-key"):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    def _headers(user_id="user-1", **kwargs):
        return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}
    return _headers
