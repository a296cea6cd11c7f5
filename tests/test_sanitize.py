import datetime as dt
from fractions import Fraction

import pytest

from rewardsync.errors import MalformedWrite
from rewardsync.models import ReferralStatus, Tier, UserRecord
from rewardsync.sanitize import (
    ABSENT,
    build_patch,
    format_timestamp,
    new_record_document,
    parse_timestamp,
    prepare,
    record_from_wire,
    record_to_wire,
)


def test_prepare_drops_absent_and_keeps_delete_markers() -> None:
    cleaned = prepare(
        {
            "external_id": "123456",
            "username": ABSENT,
            "first_name": "   ",
            "farming_window_start": None,
            "tier": Tier.TIER1,
            "reward_multiplier": Fraction(5, 2),
            "last_claim_date": dt.date(2024, 5, 1),
            "applied_event_ids": frozenset({"b", "a"}),
        }
    )
    assert cleaned == {
        "external_id": "123456",
        "farming_window_start": None,
        "tier": "tier1",
        "reward_multiplier": "5/2",
        "last_claim_date": "2024-05-01",
        "applied_event_ids": ["a", "b"],
    }


def test_prepare_strips_nested_nones() -> None:
    cleaned = prepare({"external_id": "123456", "meta": {"a": None, "b": [1, None, ABSENT, 2]}})
    assert cleaned["meta"] == {"b": [1, 2]}


def test_prepare_requires_external_id() -> None:
    with pytest.raises(MalformedWrite):
        prepare({"balance": 10})
    with pytest.raises(MalformedWrite):
        prepare({"external_id": ABSENT, "balance": 10})


def test_prepare_rejects_deleting_required_fields() -> None:
    with pytest.raises(MalformedWrite):
        prepare({"external_id": "123456", "balance": None})


def test_prepare_rejects_unsupported_values() -> None:
    with pytest.raises(MalformedWrite):
        prepare({"external_id": "123456", "blob": object()})


def test_timestamps_are_utc_with_z_suffix() -> None:
    moment = dt.datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=dt.timezone.utc)
    text = format_timestamp(moment)
    assert text == "2024-01-02T03:04:05.678Z"
    assert parse_timestamp(text) == moment
    assert parse_timestamp(1704164645000) == moment.replace(microsecond=0)
    assert parse_timestamp(1704164645) == moment.replace(microsecond=0)
    assert parse_timestamp(None) is None


def test_new_record_document_fills_defaults() -> None:
    document = new_record_document("123456", username="alice", unknown_field="x")
    assert document["external_id"] == "123456"
    assert document["username"] == "alice"
    assert document["balance"] == 0
    assert document["level"] == 1
    assert document["tier"] == "free"
    assert document["applied_event_ids"] == []
    assert document["created_at"].endswith("Z")
    assert "unknown_field" not in document
    assert "farming_window_start" not in document


def test_record_wire_round_trip_preserves_fields() -> None:
    record = UserRecord(
        external_id="123456",
        balance=250,
        experience=130,
        level=2,
        tier=Tier.TIER2,
        tier_expiry=dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc),
        reward_multiplier=Fraction(5, 2),
        referral_multiplier=Fraction(2),
        referred_by="654321",
        referral_status=ReferralStatus.PENDING,
        applied_event_ids=frozenset({"task:1"}),
    )
    assert record_from_wire(record_to_wire(record)) == record


def test_record_without_timestamps_serializes() -> None:
    document = record_to_wire(UserRecord(external_id="123456", balance=100))

    assert document["balance"] == 100
    assert "updated_at" not in document
    assert "created_at" not in document


def test_record_from_wire_requires_identity() -> None:
    with pytest.raises(MalformedWrite):
        record_from_wire({"balance": 10})


def test_build_patch_contains_only_changes() -> None:
    start = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    before = UserRecord(
        external_id="123456",
        balance=100,
        farming_window_start=start,
        farming_window_end=start + dt.timedelta(hours=8),
    )
    after = before.replace(balance=220, farming_window_start=None, farming_window_end=None)
    now = dt.datetime(2024, 1, 1, 9, tzinfo=dt.timezone.utc)

    patch = build_patch(before, after, now=now)

    assert patch == {
        "external_id": "123456",
        "balance": 220,
        "farming_window_start": None,
        "farming_window_end": None,
        "updated_at": "2024-01-01T09:00:00.000Z",
    }
    assert build_patch(before, before) == {}
