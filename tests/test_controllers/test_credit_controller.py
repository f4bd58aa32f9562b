from datetime import timedelta
from unittest.mock import patch

import pytest

from controllers.credit_controller import (
    GENERIC_UPGRADE_MESSAGE,
    INSUFFICIENT_CREDITS_MESSAGE,
    STORE_UNAVAILABLE_MESSAGE,
    CreditController,
)
from models.credit_model import StoreUnavailableError
from utils.credits import utcnow


@pytest.fixture
def controller(session, catalog):
    return CreditController.from_session(session)


class TestCreditController:
    def test_refresh_balance_payload(self, controller):
        success, payload, status = controller.refresh_balance("facade-user")

        assert success is True
        assert status == 200
        assert payload["current_balance"] == 10
        assert payload["tier"]["id"] == 'free'
        assert payload["unit_label"] == "Credits"
        assert payload["unit_size"] == 1000

    def test_spend_declined_is_402(self, controller):
        success, payload, status = controller.spend("broke", 11)

        assert success is False
        assert status == 402
        assert payload["code"] == "insufficient_credits"
        assert payload["error"] == INSUFFICIENT_CREDITS_MESSAGE
        assert payload["balance"] == 10

    def test_spend_validation_is_400(self, controller):
        success, payload, status = controller.spend("broke", 0)
        assert (success, status) == (False, 400)

    def test_retried_spend_reports_prior_success(self, controller):
        first = controller.spend("retrier", 4, source_id="msg-1")
        again = controller.spend("retrier", 4, source_id="msg-1")

        assert first[2] == 200 and first[1]["duplicate"] is False
        assert again[0] is True
        assert again[2] == 200
        assert again[1]["duplicate"] is True
        assert again[1]["spent"] == 4
        assert again[1]["balance"] == 6

    def test_duplicate_grant_is_409(self, controller):
        controller.grant("promo", 5, source_id="launch")
        success, payload, status = controller.grant("promo", 5, source_id="launch")

        assert status == 409
        assert payload["transaction"]["amount"] == 5

    def test_store_failure_is_503_not_402(self, controller):
        with patch.object(controller.ledger, "spend", side_effect=StoreUnavailableError("db down")):
            success, payload, status = controller.spend("offline", 1)

        assert success is False
        assert status == 503
        assert payload["error"] == STORE_UNAVAILABLE_MESSAGE
        assert payload["retryable"] is True

    def test_unexpected_error_is_500(self, controller):
        with patch.object(controller.ledger, "get_balance", side_effect=RuntimeError("bug")):
            success, payload, status = controller.refresh_balance("buggy")
        assert (success, status) == (False, 500)

    def test_list_transactions_next_offset(self, controller):
        for i in range(3):
            controller.spend("pager", 1, source_id=f"m{i}")

        _, page, _ = controller.list_transactions("pager", limit=2)
        assert len(page["items"]) == 2
        assert page["next_offset"] == 2

        _, last, _ = controller.list_transactions("pager", limit=2, offset=2)
        assert len(last["items"]) == 2
        _, empty, _ = controller.list_transactions("pager", limit=2, offset=4)
        assert empty["items"] == []
        assert empty["next_offset"] is None

    def test_catalog_lists_active_rows_in_order(self, controller):
        _, tiers, _ = controller.list_tiers()
        _, packages, _ = controller.list_packages()

        assert [t["id"] for t in tiers["tiers"]] == ['free', 'basic', 'premium', 'plus']
        assert [p["id"] for p in packages["packages"]] == ['starter', 'popular']
        assert packages["packages"][1]["total_credits"] == 300

    def test_record_message_cost_and_usage(self, controller):
        success, cost, status = controller.record_message_cost(
            "talker", message_id="msg-9", avatar_id="jung", input_tokens=10, output_tokens=20,
        )
        assert status == 201
        assert cost["total_tokens"] == 30
        assert cost["credits_charged"] == 1

        _, stats, status = controller.get_usage_stats("talker")
        assert status == 200
        assert stats["total_messages"] == 1
        assert stats["most_used_avatar"] == 'jung'

    def test_recommendation_payload(self, controller):
        controller.grant("shopper", 50, transaction_type='purchased', source_type='purchase', source_id='a')
        controller.grant("shopper", 50, transaction_type='purchased', source_type='purchase', source_id='b')

        success, payload, status = controller.get_recommendation("shopper")

        assert status == 200
        assert payload["should_show_prompt"] is True
        assert payload["recommendation"]["recommended_tier"] == 'basic'
        assert payload["message"] == payload["recommendation"]["reason"]

    def test_recommendation_generic_message(self, controller):
        with patch.object(controller.recommender, "get_upgrade_recommendation", return_value=None), \
             patch.object(controller.recommender, "should_show_upgrade_prompt", return_value=True):
            _, payload, _ = controller.get_recommendation("anyone")
        assert payload["message"] == GENERIC_UPGRADE_MESSAGE

    def test_subscription_lifecycle(self, controller):
        success, payload, status = controller.create_subscription("member", "premium", "sub-txn-1")
        assert status == 201
        assert payload["balance"] == 410

        _, again, status = controller.create_subscription("member", "premium", "sub-txn-1")
        assert status == 409
        assert again["transaction"]["amount"] == 400
        assert controller.refresh_balance("member")[1]["current_balance"] == 410

        assert controller.cancel_subscription("member")[2] == 200
        success, payload, status = controller.cancel_subscription("member")
        assert (success, status) == (False, 404)

    def test_purchase_and_tier_update(self, controller):
        success, payload, status = controller.process_purchase("payer", "starter", "apple-123")
        assert status == 200
        assert payload["balance"] == 60

        assert controller.update_tier("payer", "basic")[2] == 200
        assert controller.update_tier("payer", "gold")[2] == 400

        store = controller.ledger.store
        with store.atomic():
            store.start_grant_cycle("payer", utcnow() - timedelta(days=31))
        _, grant, _ = controller.apply_monthly_grant("payer")
        assert grant["applied"] is True
        assert grant["transaction"]["balance_after"] == 60 + 150
