"""Storage key derivation for chat-platform user ids."""

from __future__ import annotations

from typing import Iterable

from rewardsync.config import settings
from rewardsync.errors import InvalidKey

_PLACEHOLDERS = frozenset({"undefined", "null", "none", "nan"})


def _normalize(external_id: object) -> str:
    if external_id is None or isinstance(external_id, bool):
        return ""
    if isinstance(external_id, int):
        return str(external_id)
    return str(external_id).strip()


def validate_external_id(
    external_id: object,
    *,
    min_length: int | None = None,
    synthetic_prefixes: Iterable[str] | None = None,
) -> str:
    """Return the canonical external id or raise :class:`InvalidKey`."""

    text = _normalize(external_id)
    if not text:
        raise InvalidKey("external id is empty")
    lowered = text.lower()
    if lowered in _PLACEHOLDERS:
        raise InvalidKey(f"external id is a placeholder: {text!r}")

    prefixes = settings.SYNTHETIC_ID_PREFIXES if synthetic_prefixes is None else synthetic_prefixes
    for prefix in prefixes:
        if prefix and lowered.startswith(prefix.lower()):
            raise InvalidKey(f"synthetic external id rejected: {text!r}")

    if not text.isdecimal() or not text.isascii():
        raise InvalidKey(f"external id must be a positive integer: {text!r}")
    if text.startswith("0"):
        # leading zeros would alias the same numeric id under two keys
        raise InvalidKey(f"external id must be a positive integer: {text!r}")

    minimum = settings.MIN_EXTERNAL_ID_LENGTH if min_length is None else min_length
    if len(text) < minimum:
        raise InvalidKey(f"external id shorter than {minimum} digits: {text!r}")
    return text


def resolve_key(external_id: object, **rules) -> str:
    """Map an external id onto its record path, e.g. ``telegram_users/123456``."""

    clean = validate_external_id(external_id, **rules)
    return f"{settings.USER_KEY_ROOT}/{clean}"


def external_id_from_key(key: str) -> str:
    root, sep, tail = key.partition("/")
    if not sep or root != settings.USER_KEY_ROOT or not tail:
        raise InvalidKey(f"not a user key: {key!r}")
    return tail


__all__ = ["external_id_from_key", "resolve_key", "validate_external_id"]
