from datetime import datetime, timezone
from typing import Dict
import math


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_credit_config() -> Dict[str, int | str]:
    """Return public credit configuration (label and unit size).

    This is a lightweight helper for routes/UI to avoid importing
    heavy modules when only the display config is required.
    """
    from config import Config

    raw_size = getattr(Config, "CREDITS_UNIT_SIZE", 1000)
    try:
        size = int(raw_size)
    except (TypeError, ValueError):
        size = 1000
    if size <= 0:
        size = 1000
    return {
        "unit_label": getattr(Config, "CREDITS_UNIT_LABEL", "Credits"),
        "unit_size": size,
    }


def calculate_required_credits(
    input_tokens: int | None = 0,
    output_tokens: int | None = 0,
    unit_size: int | None = None,
) -> int:
    """Calculate credits to charge for one AI interaction.

    - Uses ceil((input_tokens + output_tokens) / unit_size)
    - Minimum of 1 credit for any billable message (including zero tokens)
    - If `unit_size` is None or invalid (<=0), falls back to Config.CREDITS_UNIT_SIZE or 1000
    """
    if unit_size is None or not isinstance(unit_size, int) or unit_size <= 0:
        unit_size = int(get_credit_config()["unit_size"])

    tokens = max(0, int(input_tokens or 0)) + max(0, int(output_tokens or 0))
    credits = math.ceil(tokens / unit_size)
    return max(1, credits)
