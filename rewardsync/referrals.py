"""Referral edges: pending on registration, confirmed once, bonus paid once."""

from __future__ import annotations

import logging
from typing import Optional

from rewardsync.coordinator import OptimisticUpdateCoordinator
from rewardsync.errors import NotEligible, NotFound
from rewardsync.keys import resolve_key, validate_external_id
from rewardsync.models import ReferralEdge, ReferralStatus, UserRecord, referral_edge
from rewardsync.rewards import IdempotentRewardApplier, RewardResult, referral_bonus

log = logging.getLogger("rewardsync.referrals")


def referral_event_id(referred_id: str) -> str:
    return f"referral_bonus:{referred_id}"


async def register_referral(
    coordinator: OptimisticUpdateCoordinator,
    referred_id: object,
    referrer_id: object,
) -> ReferralEdge:
    """Attach *referrer_id* to the referred user as a pending edge.

    Registering the same referrer twice is a no-op; a different referrer or a
    self-referral is rejected with :class:`NotEligible`.
    """

    referred = validate_external_id(referred_id)
    referrer = validate_external_id(referrer_id)
    if referred == referrer:
        raise NotEligible("user cannot refer itself", key=resolve_key(referred))

    try:
        await coordinator.current(resolve_key(referrer))
    except NotFound as exc:
        raise NotEligible(f"unknown referrer {referrer}", key=resolve_key(referred)) from exc

    def attach(record: UserRecord) -> UserRecord:
        if record.referred_by == referrer:
            return record
        if record.referred_by is not None:
            raise NotEligible("user already has a referrer", key=record.external_id)
        return record.replace(referred_by=referrer, referral_status=ReferralStatus.PENDING)

    record = await coordinator.update(resolve_key(referred), attach)
    log.info("referral registered referred=%s referrer=%s", referred, referrer)
    return referral_edge(record)


async def confirm_referral(
    coordinator: OptimisticUpdateCoordinator,
    applier: IdempotentRewardApplier,
    referred_id: object,
) -> Optional[RewardResult]:
    """Confirm the edge of *referred_id* and credit its referrer exactly once.

    Returns ``None`` when the user was not referred by anyone. Repeated calls
    re-drive the bonus, which the ledger turns into ``ALREADY_APPLIED``.
    """

    referred = validate_external_id(referred_id)

    def confirm(record: UserRecord) -> UserRecord:
        if record.referral_status is ReferralStatus.PENDING:
            return record.replace(referral_status=ReferralStatus.CONFIRMED)
        return record

    record = await coordinator.update(resolve_key(referred), confirm)
    edge = referral_edge(record)
    if edge is None:
        log.info("confirm referral: %s has no referrer", referred)
        return None

    result = await applier.apply_reward(
        resolve_key(edge.referrer_id),
        referral_event_id(referred),
        referral_bonus(),
    )
    log.info(
        "referral confirmed referred=%s referrer=%s outcome=%s",
        referred,
        edge.referrer_id,
        result.outcome.value,
    )
    return result


__all__ = ["confirm_referral", "referral_event_id", "register_referral"]
