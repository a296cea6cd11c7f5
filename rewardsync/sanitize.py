"""Sanitizing writer: the single translation point between records and store documents.

Every document that reaches the record store passes through :func:`prepare`.
Values that were never provided are represented by :data:`ABSENT` and are
dropped; ``None`` is kept at the top level and means "delete this field".
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from collections.abc import Mapping
from enum import Enum
from fractions import Fraction
from typing import Any, Iterable

from rewardsync.errors import MalformedWrite
from rewardsync.models import ReferralStatus, Tier, UserRecord, utcnow

log = logging.getLogger(__name__)


class _Absent:
    __slots__ = ()

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Any = _Absent()

REQUIRED_FIELDS = ("external_id",)

NON_DELETABLE_FIELDS = frozenset(
    {
        "external_id",
        "balance",
        "experience",
        "level",
        "daily_streak",
        "withdrawals_today",
        "referral_count",
        "referral_earnings",
        "tier",
        "reward_multiplier",
        "referral_multiplier",
        "applied_event_ids",
        "updated_at",
    }
)

_DATETIME_FIELDS = (
    "tier_expiry",
    "farming_window_start",
    "farming_window_end",
    "created_at",
    "updated_at",
)
RECORD_FIELDS = tuple(f.name for f in dataclasses.fields(UserRecord))


def format_timestamp(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    value = value.astimezone(dt.timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> dt.datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return dt.datetime.fromtimestamp(seconds, tz=dt.timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def parse_date(value: Any) -> dt.date | None:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    return dt.date.fromisoformat(str(value).strip()[:10])


def _clean_value(value: Any, *, top_level: bool) -> Any:
    if value is ABSENT:
        return ABSENT
    if value is None:
        return None if top_level else ABSENT
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool) or isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else ABSENT
    if isinstance(value, dt.datetime):
        return format_timestamp(value)
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, Fraction):
        return str(value)
    if isinstance(value, Mapping):
        return _clean_mapping(value, top_level=False)
    if isinstance(value, (set, frozenset)):
        items = [_clean_value(item, top_level=False) for item in value]
        return sorted(item for item in items if item is not ABSENT)
    if isinstance(value, (list, tuple)):
        items = [_clean_value(item, top_level=False) for item in value]
        return [item for item in items if item is not ABSENT]
    raise MalformedWrite(f"unsupported value type: {type(value).__name__}")


def _clean_mapping(data: Mapping[str, Any], *, top_level: bool) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in data.items():
        result = _clean_value(value, top_level=top_level)
        if result is ABSENT:
            continue
        cleaned[str(key)] = result
    return cleaned


def prepare(
    partial: Mapping[str, Any],
    *,
    required: Iterable[str] = REQUIRED_FIELDS,
) -> dict[str, Any]:
    """Return a store-ready copy of *partial* or raise :class:`MalformedWrite`."""

    if not isinstance(partial, Mapping):
        raise MalformedWrite("write payload must be a mapping")
    cleaned = _clean_mapping(partial, top_level=True)
    for name in required:
        if cleaned.get(name) is None:
            raise MalformedWrite(f"required field missing: {name}")
    for name, value in cleaned.items():
        if value is None and name in NON_DELETABLE_FIELDS:
            raise MalformedWrite(f"field cannot be deleted: {name}")
    return cleaned


def record_to_wire(record: UserRecord) -> dict[str, Any]:
    """Full store document for *record*; unset optional fields are omitted."""

    raw = {name: getattr(record, name) for name in RECORD_FIELDS}
    return prepare({name: value for name, value in raw.items() if value is not None})


def new_record_document(external_id: str, **fields: Any) -> dict[str, Any]:
    """Creation document for a first-contact user with defaults filled in."""

    now = utcnow()
    known = {name: value for name, value in fields.items() if name in RECORD_FIELDS}
    unknown = sorted(set(fields) - set(known))
    if unknown:
        log.debug("ignoring unknown profile fields for %s: %s", external_id, unknown)
    known = {name: value for name, value in known.items() if value is not None and value is not ABSENT}
    known.setdefault("created_at", now)
    known["updated_at"] = now
    record = UserRecord(external_id=external_id, **known)
    return record_to_wire(record)


def record_from_wire(document: Mapping[str, Any]) -> UserRecord:
    """Build a :class:`UserRecord` from a store document, tolerating missing fields."""

    external_id = document.get("external_id")
    if external_id in (None, ""):
        raise MalformedWrite("stored document has no external_id")

    kwargs: dict[str, Any] = {"external_id": str(external_id)}
    for name in ("username", "first_name", "referred_by"):
        value = document.get(name)
        if value not in (None, ""):
            kwargs[name] = str(value)
    for name in (
        "balance",
        "experience",
        "level",
        "daily_streak",
        "referral_count",
        "referral_earnings",
        "withdrawals_today",
    ):
        value = document.get(name)
        if value is not None:
            kwargs[name] = int(value)
    for name in _DATETIME_FIELDS:
        if name in document:
            kwargs[name] = parse_timestamp(document[name])
    for name in ("last_claim_date", "last_withdrawal_date"):
        if name in document:
            kwargs[name] = parse_date(document[name])
    if document.get("tier"):
        kwargs["tier"] = Tier(document["tier"])
    if document.get("referral_status"):
        kwargs["referral_status"] = ReferralStatus(document["referral_status"])
    for name in ("reward_multiplier", "referral_multiplier"):
        value = document.get(name)
        if value is not None:
            kwargs[name] = Fraction(str(value))
    events = document.get("applied_event_ids")
    if events:
        kwargs["applied_event_ids"] = frozenset(str(item) for item in events)
    return UserRecord(**kwargs)


def build_patch(before: UserRecord, after: UserRecord, *, now: dt.datetime | None = None) -> dict[str, Any]:
    """Changed fields between two snapshots as a sanitized partial document.

    Returns an empty dict when nothing changed.
    """

    changes: dict[str, Any] = {}
    for name in RECORD_FIELDS:
        if name == "updated_at":
            continue
        old, new = getattr(before, name), getattr(after, name)
        if old != new:
            changes[name] = new
    if not changes:
        return {}
    changes["external_id"] = after.external_id
    changes["updated_at"] = now or utcnow()
    return prepare(changes)


__all__ = [
    "ABSENT",
    "NON_DELETABLE_FIELDS",
    "RECORD_FIELDS",
    "REQUIRED_FIELDS",
    "build_patch",
    "format_timestamp",
    "new_record_document",
    "parse_date",
    "parse_timestamp",
    "prepare",
    "record_from_wire",
    "record_to_wire",
]
