from datetime import timedelta
from types import SimpleNamespace

import pytest

from controllers.analytics_controller import UsageAnalytics, summarize_costs
from models.credit_model import CreditValidationError, DuplicateOperationError
from utils.credits import utcnow


@pytest.fixture
def analytics(session):
    return UsageAnalytics.from_session(session)


def _record(analytics, message_id, avatar_id, credits=1, provider='claude', created_at=None, user_id="reader"):
    return analytics.record_message_cost(
        message_id=message_id,
        user_id=user_id,
        avatar_id=avatar_id,
        input_tokens=400,
        output_tokens=600,
        credits_charged=credits,
        api_cost_cents=1.5,
        provider=provider,
        created_at=created_at,
    )


def test_empty_window_returns_zero_stats(analytics):
    stats = analytics.get_usage_stats("nobody")

    assert stats.total_messages == 0
    assert stats.total_credits_used == 0
    assert stats.average_credits_per_message == 0
    assert stats.most_used_avatar == ''
    assert stats.most_used_provider == ''
    assert stats.usage_by_day == []
    assert stats.usage_by_avatar == []


def test_aggregates_by_day_and_avatar(analytics):
    now = utcnow()
    yesterday = now - timedelta(days=1)
    _record(analytics, "m1", "jung", credits=2, created_at=now)
    _record(analytics, "m2", "jung", credits=1, created_at=now)
    _record(analytics, "m3", "freud", credits=3, provider='openai', created_at=yesterday)

    stats = analytics.get_usage_stats("reader", days_back=7, now=now + timedelta(seconds=1))

    assert stats.total_messages == 3
    assert stats.total_credits_used == 6
    assert stats.average_credits_per_message == 2
    assert stats.total_api_cost_cents == pytest.approx(4.5)
    assert stats.most_used_avatar == 'jung'
    assert stats.most_used_provider == 'claude'

    by_day = {d.date: (d.credits, d.messages) for d in stats.usage_by_day}
    assert by_day == {
        now.date().isoformat(): (3, 2),
        yesterday.date().isoformat(): (3, 1),
    }
    by_avatar = {a.avatar_id: (a.credits, a.messages) for a in stats.usage_by_avatar}
    assert by_avatar == {'jung': (3, 2), 'freud': (3, 1)}


def test_window_excludes_old_and_other_users(analytics):
    now = utcnow()
    _record(analytics, "recent", "jung", created_at=now - timedelta(days=2))
    _record(analytics, "old", "jung", created_at=now - timedelta(days=45))
    _record(analytics, "other", "jung", created_at=now, user_id="someone-else")

    stats = analytics.get_usage_stats("reader", days_back=30, now=now)
    assert stats.total_messages == 1


def test_tied_avatar_is_one_of_the_tied(analytics):
    now = utcnow()
    _record(analytics, "t1", "jung", created_at=now)
    _record(analytics, "t2", "adler", created_at=now)

    stats = analytics.get_usage_stats("reader", now=now + timedelta(seconds=1))
    assert stats.most_used_avatar in {'jung', 'adler'}


def test_invalid_days_back(analytics):
    with pytest.raises(CreditValidationError):
        analytics.get_usage_stats("reader", days_back=-1)


def test_message_cost_recorded_once(analytics):
    cost = _record(analytics, "once", "jung")
    assert cost.total_tokens == 1000
    assert analytics.usage.get_by_message_id("once").credits_charged == 1

    with pytest.raises(DuplicateOperationError):
        _record(analytics, "once", "jung")


@pytest.mark.parametrize("input_tokens, output_tokens, expected", [
    (1000, 500, 2),
    (0, 0, 1),
    (600, 400, 1),
])
def test_credits_derived_from_tokens_when_omitted(analytics, input_tokens, output_tokens, expected):
    cost = analytics.record_message_cost(
        message_id=f"derived-{input_tokens}-{output_tokens}",
        user_id="reader",
        avatar_id="jung",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )
    assert cost.credits_charged == expected


@pytest.mark.parametrize("field, value", [
    ("input_tokens", -1),
    ("credits_charged", 1.5),
    ("api_cost_cents", -0.01),
])
def test_message_cost_validation(analytics, field, value):
    kwargs = {"message_id": "bad", "user_id": "reader", "avatar_id": "jung", field: value}
    with pytest.raises(CreditValidationError):
        analytics.record_message_cost(**kwargs)


def test_summarize_costs_without_database():
    now = utcnow()
    rows = [
        SimpleNamespace(credits_charged=4, api_cost_cents=2.0, created_at=now, avatar_id='horney', provider='claude'),
        SimpleNamespace(credits_charged=2, api_cost_cents=1.0, created_at=now, avatar_id='horney', provider='claude'),
    ]
    stats = summarize_costs(rows)
    assert stats.average_credits_per_message == 3
    assert stats.to_dict()['usage_by_avatar'] == [{'avatar_id': 'horney', 'credits': 6, 'messages': 2}]
