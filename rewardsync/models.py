"""Domain models for the per-user economic record."""
from __future__ import annotations

import dataclasses
import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Optional

from rewardsync.errors import InvariantViolation

EXPERIENCE_PER_LEVEL = 100


class Tier(str, Enum):
    FREE = "free"
    TIER1 = "tier1"
    TIER2 = "tier2"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class MirrorSource(str, Enum):
    AUTHORITATIVE = "authoritative"
    OPTIMISTIC = "optimistic"
    CACHED = "cached"


@dataclass(frozen=True, slots=True)
class TierConfig:
    """Static parameters of a VIP tier."""

    tier: Tier
    price_stars: int
    reward_multiplier: Fraction
    referral_multiplier: Fraction
    min_withdrawal: int
    duration_days: int
    withdrawals_per_day: int


TIERS: dict[Tier, TierConfig] = {
    Tier.FREE: TierConfig(Tier.FREE, 0, Fraction(1), Fraction(1), 200, 0, 1),
    Tier.TIER1: TierConfig(Tier.TIER1, 75, Fraction(2), Fraction(3, 2), 250, 30, 3),
    Tier.TIER2: TierConfig(Tier.TIER2, 150, Fraction(5, 2), Fraction(2), 500, 30, 5),
}


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def level_for_experience(experience: int) -> int:
    return max(0, experience) // EXPERIENCE_PER_LEVEL + 1


@dataclass(frozen=True, slots=True)
class UserRecord:
    """Snapshot of a single user's economic state."""

    external_id: str
    username: Optional[str] = None
    first_name: Optional[str] = None

    balance: int = 0
    experience: int = 0
    level: int = 1
    daily_streak: int = 0
    referral_count: int = 0
    referral_earnings: int = 0

    tier: Tier = Tier.FREE
    tier_expiry: Optional[dt.datetime] = None
    reward_multiplier: Fraction = Fraction(1)
    referral_multiplier: Fraction = Fraction(1)

    farming_window_start: Optional[dt.datetime] = None
    farming_window_end: Optional[dt.datetime] = None
    last_claim_date: Optional[dt.date] = None
    last_withdrawal_date: Optional[dt.date] = None
    withdrawals_today: int = 0

    referred_by: Optional[str] = None
    referral_status: Optional[ReferralStatus] = None

    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None
    applied_event_ids: frozenset[str] = field(default_factory=frozenset)

    def replace(self, **changes) -> "UserRecord":
        return dataclasses.replace(self, **changes)

    @property
    def farming_active(self) -> bool:
        return self.farming_window_start is not None and self.farming_window_end is not None


@dataclass(frozen=True, slots=True)
class ReferralEdge:
    referred_id: str
    referrer_id: str
    status: ReferralStatus


@dataclass(frozen=True, slots=True)
class LocalMirrorEntry:
    """Locally held copy of a record plus its synchronization metadata."""

    record: UserRecord
    captured_at: float
    source: MirrorSource
    version: int
    revision: int = 0


@dataclass(frozen=True, slots=True)
class Change:
    """Message published to listeners whenever a mirror entry moves."""

    key: str
    entry: LocalMirrorEntry
    origin: str

    @property
    def record(self) -> UserRecord:
        return self.entry.record


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    online: bool
    last_change: Optional[float]
    last_sync_time: Optional[float]


def referral_edge(record: UserRecord) -> Optional[ReferralEdge]:
    if record.referred_by is None or record.referral_status is None:
        return None
    return ReferralEdge(record.external_id, record.referred_by, record.referral_status)


def effective_tier(record: UserRecord, now: dt.datetime | None = None) -> Tier:
    """Return the tier that applies right now; expired tiers count as free."""

    if record.tier is Tier.FREE:
        return Tier.FREE
    if record.tier_expiry is None:
        return Tier.FREE
    now = now or utcnow()
    if record.tier_expiry <= now:
        return Tier.FREE
    return record.tier


def effective_config(record: UserRecord, now: dt.datetime | None = None) -> TierConfig:
    return TIERS[effective_tier(record, now)]


def normalize(record: UserRecord) -> UserRecord:
    """Recompute derived fields from their sources."""

    config = TIERS[record.tier]
    level = level_for_experience(record.experience)
    if (
        record.level == level
        and record.reward_multiplier == config.reward_multiplier
        and record.referral_multiplier == config.referral_multiplier
    ):
        return record
    return record.replace(
        level=level,
        reward_multiplier=config.reward_multiplier,
        referral_multiplier=config.referral_multiplier,
    )


def validate_record(record: UserRecord) -> None:
    """Raise :class:`InvariantViolation` if the record is not storable."""

    key = record.external_id
    if record.balance < 0:
        raise InvariantViolation(f"balance would become negative ({record.balance})", key=key)
    for name in ("experience", "daily_streak", "referral_count", "referral_earnings", "withdrawals_today"):
        if getattr(record, name) < 0:
            raise InvariantViolation(f"{name} must be non-negative", key=key)
    if record.level != level_for_experience(record.experience):
        raise InvariantViolation("level does not match experience", key=key)

    start, end = record.farming_window_start, record.farming_window_end
    if (start is None) != (end is None):
        raise InvariantViolation("farming window must have both bounds or none", key=key)
    if start is not None and end is not None and start >= end:
        raise InvariantViolation("farming window must end after it starts", key=key)

    if record.tier is not Tier.FREE and record.tier_expiry is None:
        raise InvariantViolation("paid tier requires an expiry", key=key)
    if record.reward_multiplier < 1 or record.referral_multiplier < 1:
        raise InvariantViolation("multipliers must be at least 1", key=key)

    if (record.referred_by is None) != (record.referral_status is None):
        raise InvariantViolation("referral edge is incomplete", key=key)
    if record.referred_by is not None and record.referred_by == record.external_id:
        raise InvariantViolation("user cannot refer itself", key=key)


__all__ = [
    "Change",
    "ConnectionStatus",
    "LocalMirrorEntry",
    "MirrorSource",
    "ReferralEdge",
    "ReferralStatus",
    "TIERS",
    "Tier",
    "TierConfig",
    "UserRecord",
    "effective_config",
    "effective_tier",
    "level_for_experience",
    "normalize",
    "referral_edge",
    "utcnow",
    "validate_record",
]
