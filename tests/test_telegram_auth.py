import json
from urllib.parse import urlencode

from chartsignal.telegram_auth import compute_init_data_hash, verify_init_data

BOT_TOKEN = "123456:TEST-token"


def _signed_init_data(fields, token=BOT_TOKEN):
    signed = dict(fields)
    signed["hash"] = compute_init_data_hash(fields, token)
    return urlencode(signed)


def _fields(user=None):
    return {
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps(user or {"id": 279058397, "first_name": "Vlad", "last_name": "K", "username": "vdkfrost"}),
        "auth_date": "1662771648",
    }


def test_valid_payload_returns_identity():
    identity = verify_init_data(_signed_init_data(_fields()), BOT_TOKEN)

    assert identity is not None
    assert identity.id == 279058397
    assert identity.name == "Vlad K"
    assert identity.username == "vdkfrost"


def test_wrong_secret_is_unverified():
    assert verify_init_data(_signed_init_data(_fields()), "999:other-token") is None


def test_missing_inputs_are_unverified_without_hashing(monkeypatch):
    from chartsignal import telegram_auth

    def boom(*args, **kwargs):
        raise AssertionError("hash must not be computed")

    monkeypatch.setattr(telegram_auth, "compute_init_data_hash", boom)

    assert verify_init_data("", BOT_TOKEN) is None
    assert verify_init_data(None, BOT_TOKEN) is None
    assert verify_init_data("user=%7B%7D&hash=abc", None) is None
    assert verify_init_data("user=%7B%7D&hash=abc", "") is None


def test_missing_hash_field_is_unverified():
    assert verify_init_data(urlencode(_fields()), BOT_TOKEN) is None


def test_any_single_character_tamper_fails():
    payload = _signed_init_data(_fields())
    assert verify_init_data(payload, BOT_TOKEN) is not None

    for i, ch in enumerate(payload):
        replacement = "x" if ch != "x" else "y"
        tampered = payload[:i] + replacement + payload[i + 1:]
        assert verify_init_data(tampered, BOT_TOKEN) is None, f"tamper at {i} ({ch!r}) still verified"


def test_field_order_does_not_matter():
    fields = _fields()
    signed_hash = compute_init_data_hash(fields, BOT_TOKEN)
    reordered = urlencode([("hash", signed_hash)] + list(reversed(list(fields.items()))))

    assert verify_init_data(reordered, BOT_TOKEN) is not None


def test_malformed_payloads_never_raise():
    for payload in ["%%%", "hash=", "&&&", "user=not-json&hash=00", "=\n="]:
        assert verify_init_data(payload, BOT_TOKEN) is None


def test_signed_payload_without_user_is_unverified():
    fields = {"query_id": "abc", "auth_date": "1662771648"}
    assert verify_init_data(_signed_init_data(fields), BOT_TOKEN) is None


def test_signed_but_unparsable_user_is_unverified():
    fields = {"user": "{not json", "auth_date": "1662771648"}
    assert verify_init_data(_signed_init_data(fields), BOT_TOKEN) is None


def test_name_falls_back_to_username():
    fields = _fields({"id": 42, "username": "trader42"})
    identity = verify_init_data(_signed_init_data(fields), BOT_TOKEN)

    assert identity.id == 42
    assert identity.name == "trader42"


def test_max_age_rejects_stale_auth_date():
    payload = _signed_init_data(_fields())

    assert verify_init_data(payload, BOT_TOKEN, max_age_seconds=3600, now=1662771648 + 60) is not None
    assert verify_init_data(payload, BOT_TOKEN, max_age_seconds=3600, now=1662771648 + 7200) is None
    # disabled by default
    assert verify_init_data(payload, BOT_TOKEN, now=1662771648 + 10 ** 9) is not None
