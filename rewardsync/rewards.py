"""At-most-once reward crediting and the economic mutations built on it."""

from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Callable

from rewardsync.config import settings
from rewardsync.coordinator import OptimisticUpdateCoordinator
from rewardsync.errors import InvariantViolation, MalformedWrite, NotEligible, SyncError
from rewardsync.metrics import REWARDS
from rewardsync.models import (
    TIERS,
    Tier,
    UserRecord,
    effective_config,
    utcnow,
)

RewardFn = Callable[[UserRecord], UserRecord]

log = logging.getLogger("rewardsync.rewards")

EXPERIENCE_DIVISOR = 10


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass(frozen=True, slots=True)
class RewardResult:
    outcome: ApplyOutcome
    record: UserRecord

    @property
    def applied(self) -> bool:
        return self.outcome is ApplyOutcome.APPLIED


class IdempotentRewardApplier:
    """Applies a reward at most once per event id.

    The event id is recorded in ``applied_event_ids`` in the same patch as the
    reward itself, under the coordinator's per-key lock. A failed write rolls
    both back together, so a retry with the same id is always safe.
    """

    def __init__(
        self,
        coordinator: OptimisticUpdateCoordinator,
        *,
        warn_threshold: int | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._warn_threshold = warn_threshold or settings.APPLIED_EVENTS_WARN_THRESHOLD

    async def apply_reward(self, key: str, event_id: str, reward_fn: RewardFn) -> RewardResult:
        event_id = (event_id or "").strip()
        if not event_id:
            raise MalformedWrite("event id must not be empty", key=key)

        seen = False

        def mutate(current: UserRecord) -> UserRecord:
            nonlocal seen
            # runs again on a fresh record after a revision conflict
            seen = event_id in current.applied_event_ids
            if seen:
                return current
            rewarded = reward_fn(current)
            return rewarded.replace(applied_event_ids=current.applied_event_ids | {event_id})

        try:
            record = await self._coordinator.update(key, mutate)
        except NotEligible:
            REWARDS.labels("not_eligible").inc()
            raise
        except SyncError:
            REWARDS.labels("failed").inc()
            raise

        if seen:
            REWARDS.labels(ApplyOutcome.ALREADY_APPLIED.value).inc()
            log.info("reward %s for %s already applied", event_id, key)
            return RewardResult(ApplyOutcome.ALREADY_APPLIED, record)

        REWARDS.labels(ApplyOutcome.APPLIED.value).inc()
        log.info("reward %s applied to %s balance=%s", event_id, key, record.balance)
        if len(record.applied_event_ids) > self._warn_threshold:
            log.warning(
                "ledger of %s holds %s event ids (threshold %s)",
                key,
                len(record.applied_event_ids),
                self._warn_threshold,
            )
        return RewardResult(ApplyOutcome.APPLIED, record)


def scaled(amount: int, multiplier: Fraction) -> int:
    return math.floor(amount * multiplier)


def experience_for(coins: int) -> int:
    return max(0, coins) // EXPERIENCE_DIVISOR


# Reward descriptors. Each returns a pure ``UserRecord -> UserRecord``
# function; preconditions raise NotEligible inside the per-key lock.


def credit(amount: int, *, experience: bool = True) -> RewardFn:
    if amount <= 0:
        raise MalformedWrite("credit amount must be positive")

    def apply(record: UserRecord) -> UserRecord:
        gained = experience_for(amount) if experience else 0
        return record.replace(
            balance=record.balance + amount,
            experience=record.experience + gained,
        )

    return apply


def debit(amount: int) -> RewardFn:
    if amount <= 0:
        raise MalformedWrite("debit amount must be positive")

    def apply(record: UserRecord) -> UserRecord:
        if amount > record.balance:
            raise InvariantViolation(
                f"insufficient balance: {record.balance} < {amount}", key=record.external_id
            )
        return record.replace(balance=record.balance - amount)

    return apply


def task_claim(reward: int) -> RewardFn:
    return credit(reward)


def start_farming(now: dt.datetime | None = None) -> RewardFn:
    def apply(record: UserRecord) -> UserRecord:
        moment = now or utcnow()
        if record.farming_active:
            if moment < record.farming_window_end:
                raise NotEligible("farming session already active", key=record.external_id)
            raise NotEligible("claim the finished farming session first", key=record.external_id)
        multiplier = effective_config(record, moment).reward_multiplier
        duration = dt.timedelta(seconds=settings.farming_duration_seconds / float(multiplier))
        return record.replace(
            farming_window_start=moment,
            farming_window_end=moment + duration,
        )

    return apply


def farming_claim(now: dt.datetime | None = None) -> RewardFn:
    def apply(record: UserRecord) -> UserRecord:
        moment = now or utcnow()
        if not record.farming_active:
            raise NotEligible("no farming session to claim", key=record.external_id)
        if moment < record.farming_window_end:
            raise NotEligible("farming session still running", key=record.external_id)
        multiplier = effective_config(record, moment).reward_multiplier
        coins = scaled(settings.FARMING_BASE_REWARD, multiplier)
        return record.replace(
            balance=record.balance + coins,
            experience=record.experience + experience_for(coins),
            farming_window_start=None,
            farming_window_end=None,
        )

    return apply


def daily_reward(streak: int, multiplier: Fraction = Fraction(1)) -> int:
    bonus = min(max(0, streak) * settings.DAILY_STREAK_STEP, settings.DAILY_STREAK_CAP)
    return scaled(settings.DAILY_BASE_REWARD + bonus, multiplier)


def daily_claim(now: dt.datetime | None = None) -> RewardFn:
    def apply(record: UserRecord) -> UserRecord:
        moment = now or utcnow()
        today = moment.date()
        last = record.last_claim_date
        if last is not None and last >= today:
            raise NotEligible("daily reward already claimed today", key=record.external_id)
        streak = record.daily_streak if last == today - dt.timedelta(days=1) else 0
        coins = daily_reward(streak, effective_config(record, moment).reward_multiplier)
        return record.replace(
            balance=record.balance + coins,
            experience=record.experience + experience_for(coins),
            daily_streak=streak + 1,
            last_claim_date=today,
        )

    return apply


def referral_bonus(now: dt.datetime | None = None) -> RewardFn:
    """Credit the referrer; the multiplier is the referrer's effective one."""

    def apply(record: UserRecord) -> UserRecord:
        multiplier = effective_config(record, now or utcnow()).referral_multiplier
        coins = scaled(settings.REFERRAL_BASE_REWARD, multiplier)
        return record.replace(
            balance=record.balance + coins,
            experience=record.experience + experience_for(coins),
            referral_count=record.referral_count + 1,
            referral_earnings=record.referral_earnings + coins,
        )

    return apply


def payment_credit(coins: int) -> RewardFn:
    if coins <= 0:
        raise MalformedWrite("payment must credit a positive amount")
    return credit(coins, experience=False)


def tier_activation(tier: Tier | str, now: dt.datetime | None = None) -> RewardFn:
    try:
        target = Tier(tier)
    except ValueError as exc:
        raise MalformedWrite(f"unknown tier: {tier!r}") from exc
    if target is Tier.FREE:
        raise MalformedWrite("the free tier cannot be purchased")
    config = TIERS[target]

    def apply(record: UserRecord) -> UserRecord:
        moment = now or utcnow()
        start = moment
        if record.tier is target and record.tier_expiry is not None and record.tier_expiry > moment:
            # renewal extends the running period
            start = record.tier_expiry
        return record.replace(
            tier=target,
            tier_expiry=start + dt.timedelta(days=config.duration_days),
        )

    return apply


def withdrawal(amount: int, now: dt.datetime | None = None) -> RewardFn:
    """Debit a withdrawal request, within the tier minimum and daily request count."""

    if amount <= 0:
        raise MalformedWrite("withdrawal amount must be positive")

    def apply(record: UserRecord) -> UserRecord:
        moment = now or utcnow()
        config = effective_config(record, moment)
        if amount < config.min_withdrawal:
            raise NotEligible(
                f"minimum withdrawal is {config.min_withdrawal} coins", key=record.external_id
            )
        today = moment.date()
        made = record.withdrawals_today if record.last_withdrawal_date == today else 0
        if made >= config.withdrawals_per_day:
            raise NotEligible(
                f"daily limit of {config.withdrawals_per_day} withdrawals reached",
                key=record.external_id,
            )
        return debit(amount)(record).replace(
            last_withdrawal_date=today,
            withdrawals_today=made + 1,
        )

    return apply


__all__ = [
    "ApplyOutcome",
    "IdempotentRewardApplier",
    "RewardFn",
    "RewardResult",
    "credit",
    "daily_claim",
    "daily_reward",
    "debit",
    "experience_for",
    "farming_claim",
    "payment_credit",
    "referral_bonus",
    "start_farming",
    "task_claim",
    "tier_activation",
    "withdrawal",
]
