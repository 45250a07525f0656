from enum import Enum
from typing import Any, Optional

import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

__all__ = [
    "PricingTier",
    "TIER_CONFIG",
    "TIER_ORDER",
    "normalize_tier",
    "get_tier_config",
    "get_price_minor",
    "get_gateway_price_id",
    "tier_from_gateway_price",
    "is_upgrade",
]


class PricingTier(str, Enum):
    """Available subscription plans."""

    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# Prices are monthly, in USD cents.
TIER_CONFIG: dict[PricingTier, dict[str, Any]] = {
    PricingTier.STARTER: {
        "name": "Starter",
        "description": "Perfect for small businesses",
        "price_minor": 2900,
        "currency": "USD",
        "price_setting": "GATEWAY_PRICE_STARTER",
        "limits": {
            "max_users": 3,
            "max_contacts": 1000,
            "max_messages": 1000,
            "automation_rules": 5,
        },
    },
    PricingTier.PROFESSIONAL: {
        "name": "Professional",
        "description": "For growing teams",
        "price_minor": 9900,
        "currency": "USD",
        "price_setting": "GATEWAY_PRICE_PROFESSIONAL",
        "limits": {
            "max_users": 10,
            "max_contacts": 10000,
            "max_messages": 10000,
            "automation_rules": 20,
        },
    },
    PricingTier.ENTERPRISE: {
        "name": "Enterprise",
        "description": "For large organizations",
        "price_minor": 19900,
        "currency": "USD",
        "price_setting": "GATEWAY_PRICE_ENTERPRISE",
        # -1 means unlimited
        "limits": {
            "max_users": -1,
            "max_contacts": -1,
            "max_messages": -1,
            "automation_rules": -1,
        },
    },
}

TIER_ORDER: dict[PricingTier, int] = {
    PricingTier.STARTER: 0,
    PricingTier.PROFESSIONAL: 1,
    PricingTier.ENTERPRISE: 2,
}


def normalize_tier(tier: PricingTier | str | None) -> Optional[PricingTier]:
    """Map a raw plan value to a PricingTier, or None when it is not a known plan."""
    if isinstance(tier, PricingTier):
        return tier
    if isinstance(tier, str):
        try:
            return PricingTier(tier.strip().lower())
        except ValueError:
            return None
    return None


def get_tier_config(tier: PricingTier | str) -> dict[str, Any]:
    """Get configuration for a plan. Raises KeyError for unknown plans."""
    resolved = normalize_tier(tier)
    if resolved is None:
        raise KeyError(f"Unknown plan: {tier}")
    return TIER_CONFIG[resolved]


def get_price_minor(tier: PricingTier | str) -> int:
    return int(get_tier_config(tier)["price_minor"])


def get_gateway_price_id(tier: PricingTier | str) -> Optional[str]:
    """Gateway price identifier configured for a plan."""
    setting_name = get_tier_config(tier)["price_setting"]
    return getattr(get_settings(), setting_name, None)


def tier_from_gateway_price(price_id: Optional[str]) -> Optional[PricingTier]:
    """Reverse lookup from a gateway price identifier to a plan."""
    if not price_id:
        return None
    for tier in PricingTier:
        if get_gateway_price_id(tier) == price_id:
            return tier
    logger.warning("gateway_price_not_mapped", price_id=price_id)
    return None


def is_upgrade(current: PricingTier | str, target: PricingTier | str) -> bool:
    current_tier = normalize_tier(current)
    target_tier = normalize_tier(target)
    if current_tier is None or target_tier is None:
        return False
    return TIER_ORDER[target_tier] > TIER_ORDER[current_tier]
