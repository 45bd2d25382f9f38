"""
Overstay penalty configuration

Effective config follows the hierarchy (highest priority first):
1. Storage listing values (if set)
2. Location defaults (if set)
3. Platform settings (admin-editable key/value rows)
4. Configured defaults (environment)
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    OVERSTAY_DEFAULT_GRACE_PERIOD_DAYS,
    OVERSTAY_DEFAULT_MAX_PENALTY_DAYS,
    OVERSTAY_DEFAULT_PENALTY_RATE,
)
from ...models import StorageListing
from .calculator import to_decimal
from .repository import OverstayRepository

logger = logging.getLogger(__name__)

SETTING_GRACE_PERIOD_DAYS = "overstay_grace_period_days"
SETTING_PENALTY_RATE = "overstay_penalty_rate"
SETTING_MAX_PENALTY_DAYS = "overstay_max_penalty_days"


@dataclass(frozen=True)
class PenaltyConfig:
    grace_period_days: int
    penalty_rate: Decimal
    max_penalty_days: int
    policy_text: Optional[str] = None


def _parse_int(raw: str, fallback: int, key: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Ignoring invalid platform setting {key}={raw!r}")
        return fallback


def _parse_rate(raw: str, fallback: Decimal, key: str) -> Decimal:
    try:
        return Decimal(raw)
    except (TypeError, InvalidOperation):
        logger.warning(f"⚠️ Ignoring invalid platform setting {key}={raw!r}")
        return fallback


def get_platform_defaults(db: Session) -> PenaltyConfig:
    settings = OverstayRepository.get_platform_settings(
        db, [SETTING_GRACE_PERIOD_DAYS, SETTING_PENALTY_RATE, SETTING_MAX_PENALTY_DAYS]
    )
    grace = OVERSTAY_DEFAULT_GRACE_PERIOD_DAYS
    rate = to_decimal(OVERSTAY_DEFAULT_PENALTY_RATE)
    max_days = OVERSTAY_DEFAULT_MAX_PENALTY_DAYS

    if SETTING_GRACE_PERIOD_DAYS in settings:
        grace = _parse_int(settings[SETTING_GRACE_PERIOD_DAYS], grace, SETTING_GRACE_PERIOD_DAYS)
    if SETTING_PENALTY_RATE in settings:
        rate = _parse_rate(settings[SETTING_PENALTY_RATE], rate, SETTING_PENALTY_RATE)
    if SETTING_MAX_PENALTY_DAYS in settings:
        max_days = _parse_int(settings[SETTING_MAX_PENALTY_DAYS], max_days, SETTING_MAX_PENALTY_DAYS)

    return PenaltyConfig(grace_period_days=grace, penalty_rate=rate, max_penalty_days=max_days)


def get_effective_penalty_config(db: Session, listing: StorageListing) -> PenaltyConfig:
    """Resolve the config that applies to a booking on this listing"""
    config = get_platform_defaults(db)
    grace = config.grace_period_days
    rate = config.penalty_rate
    max_days = config.max_penalty_days
    policy_text = None

    location = listing.kitchen.location if listing.kitchen else None
    if location is not None:
        if location.overstay_grace_period_days is not None:
            grace = location.overstay_grace_period_days
        if location.overstay_penalty_rate is not None:
            rate = to_decimal(location.overstay_penalty_rate)
        if location.overstay_max_penalty_days is not None:
            max_days = location.overstay_max_penalty_days
        policy_text = location.overstay_policy_text

    if listing.overstay_grace_period_days is not None:
        grace = listing.overstay_grace_period_days
    if listing.overstay_penalty_rate is not None:
        rate = to_decimal(listing.overstay_penalty_rate)
    if listing.overstay_max_penalty_days is not None:
        max_days = listing.overstay_max_penalty_days

    return PenaltyConfig(
        grace_period_days=grace,
        penalty_rate=rate,
        max_penalty_days=max_days,
        policy_text=policy_text,
    )
