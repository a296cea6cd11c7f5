import datetime as dt

import pytest

from rewardsync.errors import InvalidKey, NotEligible
from rewardsync.models import ReferralStatus, Tier
from rewardsync.referrals import confirm_referral, referral_event_id, register_referral
from rewardsync.rewards import ApplyOutcome

REFERRER = "111111111"
REFERRED = "222222222"


@pytest.mark.asyncio
async def test_referral_is_confirmed_and_paid_once(coordinator, applier, store, seed) -> None:
    referrer_key = await seed(REFERRER)
    await seed(REFERRED)

    edge = await register_referral(coordinator, REFERRED, REFERRER)
    assert edge.status is ReferralStatus.PENDING
    assert edge.referrer_id == REFERRER

    first = await confirm_referral(coordinator, applier, REFERRED)
    second = await confirm_referral(coordinator, applier, REFERRED)

    assert first.outcome is ApplyOutcome.APPLIED
    assert second.outcome is ApplyOutcome.ALREADY_APPLIED
    document = (await store.read(referrer_key)).document
    assert document["balance"] == 100
    assert document["referral_count"] == 1
    assert document["referral_earnings"] == 100
    assert referral_event_id(REFERRED) in document["applied_event_ids"]

    referred = await coordinator.current(f"telegram_users/{REFERRED}")
    assert referred.referral_status is ReferralStatus.CONFIRMED


@pytest.mark.asyncio
async def test_registering_the_same_referrer_twice_is_a_no_op(coordinator, store, seed) -> None:
    await seed(REFERRER)
    referred_key = await seed(REFERRED)

    await register_referral(coordinator, REFERRED, REFERRER)
    revision = (await store.read(referred_key)).revision
    edge = await register_referral(coordinator, REFERRED, int(REFERRER))

    assert edge.status is ReferralStatus.PENDING
    assert (await store.read(referred_key)).revision == revision


@pytest.mark.asyncio
async def test_referrals_are_rejected_when_ineligible(coordinator, seed) -> None:
    await seed(REFERRER)
    await seed("333333333")
    await seed(REFERRED)

    with pytest.raises(NotEligible):
        await register_referral(coordinator, REFERRED, REFERRED)
    with pytest.raises(NotEligible):
        await register_referral(coordinator, REFERRED, "444444444")
    with pytest.raises(InvalidKey):
        await register_referral(coordinator, REFERRED, "browser_1234")

    await register_referral(coordinator, REFERRED, REFERRER)
    with pytest.raises(NotEligible):
        await register_referral(coordinator, REFERRED, "333333333")


@pytest.mark.asyncio
async def test_confirm_without_referrer_returns_none(coordinator, applier, seed) -> None:
    await seed(REFERRED)
    assert await confirm_referral(coordinator, applier, REFERRED) is None


@pytest.mark.asyncio
async def test_bonus_uses_the_referrer_tier(coordinator, applier, store, seed) -> None:
    expiry = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=5)
    referrer_key = await seed(REFERRER, tier=Tier.TIER1, tier_expiry=expiry)
    await seed(REFERRED)

    await register_referral(coordinator, REFERRED, REFERRER)
    result = await confirm_referral(coordinator, applier, REFERRED)

    assert result.record.balance == 150
    assert (await store.read(referrer_key)).document["referral_earnings"] == 150
