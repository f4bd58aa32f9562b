import pytest

from utils.credits import calculate_required_credits, get_credit_config


@pytest.mark.parametrize(
    "input_tokens, output_tokens, expected",
    [
        (0, 0, 1),
        (1, 0, 1),
        (400, 599, 1),
        (400, 600, 1),
        (500, 501, 2),
        (0, 1999, 2),
        (1000, 1000, 2),
        (2000, 1, 3),
        (6_000, 4_000, 10),
    ],
)
def test_calculate_required_credits_boundaries(input_tokens, output_tokens, expected):
    assert calculate_required_credits(input_tokens, output_tokens, unit_size=1000) == expected


def test_calculate_required_credits_uses_config(monkeypatch):
    from config import Config
    monkeypatch.setattr(Config, "CREDITS_UNIT_SIZE", 500, raising=False)

    assert calculate_required_credits(250, 250, unit_size=None) == 1
    assert calculate_required_credits(250, 251, unit_size=None) == 2


def test_minimum_one_credit_without_tokens():
    assert calculate_required_credits() == 1
    assert calculate_required_credits(None, None) == 1
    # Negative counts are treated as zero
    assert calculate_required_credits(-500, 0) == 1


def test_invalid_config_unit_size_falls_back(monkeypatch):
    from config import Config
    monkeypatch.setattr(Config, "CREDITS_UNIT_SIZE", 0, raising=False)
    assert calculate_required_credits(1500, 0, unit_size=None) == 2
    assert get_credit_config()["unit_size"] == 1000


def test_credit_config_label(monkeypatch):
    from config import Config
    monkeypatch.setattr(Config, "CREDITS_UNIT_LABEL", "Sessions", raising=False)
    assert get_credit_config() == {"unit_label": "Sessions", "unit_size": 1000}
