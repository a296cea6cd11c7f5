import pytest

from rewardsync.errors import InvalidKey
from rewardsync.keys import external_id_from_key, resolve_key, validate_external_id


def test_resolve_key_accepts_numeric_ids() -> None:
    assert resolve_key("123456789") == "telegram_users/123456789"
    assert resolve_key(987654321) == "telegram_users/987654321"
    assert resolve_key("  55555 ") == "telegram_users/55555"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   ",
        None,
        "undefined",
        "null",
        "None",
        "browser_12345",
        "anon98765",
        "guest_1",
        "fallback-123456",
        "local_123456",
        "temp_123456",
        "12a456",
        "-123456",
        "1234",
        "0123456",
        "١٢٣٤٥٦",
        True,
    ],
)
def test_resolve_key_rejects_unusable_ids(raw) -> None:
    with pytest.raises(InvalidKey):
        resolve_key(raw)


def test_rules_can_be_overridden_per_call() -> None:
    assert validate_external_id("1234", min_length=3) == "1234"
    assert validate_external_id("123456", synthetic_prefixes=[]) == "123456"
    with pytest.raises(InvalidKey):
        validate_external_id("bot_123456", synthetic_prefixes=["bot_"])


def test_external_id_from_key_round_trip() -> None:
    assert external_id_from_key(resolve_key(424242)) == "424242"
    with pytest.raises(InvalidKey):
        external_id_from_key("other_root/123456")
    with pytest.raises(InvalidKey):
        external_id_from_key("telegram_users/")
