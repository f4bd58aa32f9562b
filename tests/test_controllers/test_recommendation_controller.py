from datetime import timedelta

import pytest

from controllers.ledger_controller import CreditLedger
from controllers.recommendation_controller import (
    GENERIC_SAVINGS_REASON,
    MULTIPLE_PURCHASES_REASON,
    UpgradeRecommender,
    usage_pattern,
)
from controllers.subscription_controller import SubscriptionController
from utils.credits import utcnow


@pytest.fixture
def ledger(session, catalog):
    return CreditLedger.from_session(session)


@pytest.fixture
def recommender(session, catalog):
    return UpgradeRecommender.from_session(session)


def _buy(ledger, user_id, amount, ref):
    ledger.grant(user_id, amount, transaction_type='purchased', source_type='purchase', source_id=ref)


@pytest.mark.parametrize("monthly, expected", [
    (0, 'light'),
    (100, 'light'),
    (100.5, 'moderate'),
    (200, 'moderate'),
    (201, 'heavy'),
])
def test_usage_pattern_thresholds(monthly, expected):
    assert usage_pattern(monthly) == expected


def test_no_history_no_recommendation(recommender):
    assert recommender.get_upgrade_recommendation("stranger") is None


def test_welcome_credits_alone_recommend_nothing(ledger, recommender):
    ledger.get_balance("fresh")
    assert recommender.get_upgrade_recommendation("fresh") is None


def test_history_outside_window_is_ignored(ledger, recommender):
    _buy(ledger, "lapsed", 300, "p1")
    _buy(ledger, "lapsed", 300, "p2")
    later = utcnow() + timedelta(days=61)
    assert recommender.get_upgrade_recommendation("lapsed", now=later) is None


def test_repeat_buyer_gets_cheapest_fitting_tier(ledger, recommender):
    _buy(ledger, "buyer", 300, "p1")
    _buy(ledger, "buyer", 300, "p2")
    ledger.spend("buyer", 100)

    rec = recommender.get_upgrade_recommendation("buyer")

    assert rec.recommended_tier == 'basic'
    assert rec.reason == MULTIPLE_PURCHASES_REASON
    assert rec.potential_savings == 290
    assert rec.usage_pattern == 'light'


def test_first_fitting_tier_in_catalog_order(ledger, recommender):
    _buy(ledger, "heavy-buyer", 300, "p1")
    _buy(ledger, "heavy-buyer", 300, "p2")
    ledger.spend("heavy-buyer", 400)

    rec = recommender.get_upgrade_recommendation("heavy-buyer")

    # 200 credits a month outgrows basic (150) but fits premium (400)
    assert rec.recommended_tier == 'premium'
    assert rec.potential_savings == 280
    assert rec.usage_pattern == 'moderate'


def test_single_purchase_uses_generic_reason(ledger, recommender):
    _buy(ledger, "one-off", 300, "p1")
    rec = recommender.get_upgrade_recommendation("one-off")
    assert rec.recommended_tier == 'basic'
    assert rec.reason == GENERIC_SAVINGS_REASON


def test_upgrade_prompt_after_repeat_purchases(ledger, recommender):
    _buy(ledger, "prompted", 50, "p1")
    assert recommender.should_show_upgrade_prompt("prompted") is False

    _buy(ledger, "prompted", 50, "p2")
    assert recommender.should_show_upgrade_prompt("prompted") is True
    assert recommender.should_show_upgrade_prompt("prompted", now=utcnow() + timedelta(days=31)) is False


def test_no_upgrade_prompt_for_subscribers(session, ledger, recommender):
    _buy(ledger, "subscriber", 50, "p1")
    _buy(ledger, "subscriber", 50, "p2")
    SubscriptionController.from_session(session).create_subscription("subscriber", "basic", "sub-txn")

    assert recommender.should_show_upgrade_prompt("subscriber") is False
