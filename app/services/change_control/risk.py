"""
Risk classification of change records.

A record's tier is derived from the magnitude of its estimated revenue
impact, optionally overridden by an explicit `risk` in the estimate, and
floored per action type for customer-visible changes.
"""
from typing import Any, Mapping, Optional

from app.settings import settings

RISK_ORDER = {"low": 0, "medium": 1, "high": 2}

# highest tier each autopilot mode may run unattended
MODE_CEILINGS = {
    "safe": "low",
    "balanced": "medium",
    "aggressive": "high",
}

# price changes and customer messaging are never low risk
ACTION_RISK_FLOOR = {
    "adjust_price": "medium",
    "send_cart_recovery": "medium",
}


def _max_tier(a: str, b: str) -> str:
    return a if RISK_ORDER[a] >= RISK_ORDER[b] else b


def risk_tier(
    action_type: str,
    estimated_impact: Optional[Mapping[str, Any]],
    medium_threshold: Optional[float] = None,
    high_threshold: Optional[float] = None,
) -> str:
    medium_threshold = settings.risk_medium_threshold if medium_threshold is None else medium_threshold
    high_threshold = settings.risk_high_threshold if high_threshold is None else high_threshold

    impact = estimated_impact or {}
    explicit = impact.get("risk")
    if explicit in RISK_ORDER:
        tier = explicit
    else:
        try:
            magnitude = abs(float(impact.get("expected_revenue") or 0.0))
        except (TypeError, ValueError):
            magnitude = 0.0
        if magnitude > high_threshold:
            tier = "high"
        elif magnitude > medium_threshold:
            tier = "medium"
        else:
            tier = "low"

    floor = ACTION_RISK_FLOOR.get(action_type)
    return _max_tier(tier, floor) if floor else tier


def record_risk_tier(record) -> str:
    return risk_tier(record.action_type, record.estimated_impact)


def risk_ceiling(mode: str) -> str:
    # unknown modes fall back to the most conservative ceiling
    return MODE_CEILINGS.get(mode, "low")


def within_ceiling(tier: str, mode: str) -> bool:
    return RISK_ORDER[tier] <= RISK_ORDER[risk_ceiling(mode)]
