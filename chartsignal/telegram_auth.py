"""
Telegram Mini App launch-data verification.

The launcher signs `initData` with a key derived from the bot token:

    secret = HMAC_SHA256(key="WebAppData", msg=bot_token)
    hash   = hex(HMAC_SHA256(key=secret, msg=data_check_string))

where data_check_string is every field except `hash`, sorted by key and
joined as "key=value" lines. A failed check never raises; callers get None
and decide what to do with an anonymous request.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Dict, Optional
from urllib.parse import parse_qsl

from .schemas import VerifiedIdentity

logger = logging.getLogger(__name__)

_WEBAPP_KEY = b"WebAppData"


def build_data_check_string(fields: Dict[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def compute_init_data_hash(fields: Dict[str, str], bot_token: str) -> str:
    """Hex signature for `fields` (which must not contain `hash`)."""
    secret_key = hmac.new(_WEBAPP_KEY, bot_token.encode("utf-8"), hashlib.sha256).digest()
    check_string = build_data_check_string(fields)
    return hmac.new(secret_key, check_string.encode("utf-8"), hashlib.sha256).hexdigest()


def _identity_from_user_field(raw_user: Optional[str]) -> Optional[VerifiedIdentity]:
    if not raw_user:
        return None
    user = json.loads(raw_user)
    if not isinstance(user, dict) or "id" not in user:
        return None
    name = " ".join(
        part for part in (user.get("first_name"), user.get("last_name")) if part
    ).strip()
    username = user.get("username") or None
    return VerifiedIdentity(id=int(user["id"]), name=name or username or str(user["id"]), username=username)


def verify_init_data(
    init_data: Optional[str],
    bot_token: Optional[str],
    max_age_seconds: int = 0,
    now: Optional[float] = None,
) -> Optional[VerifiedIdentity]:
    """
    Return the signed user, or None when the payload is absent, unsigned,
    tampered, stale (only if max_age_seconds > 0) or carries no usable user.
    """
    if not init_data or not bot_token:
        return None

    try:
        fields = dict(parse_qsl(init_data, keep_blank_values=True))
        received_hash = fields.pop("hash", None)
        if not received_hash:
            return None

        expected_hash = compute_init_data_hash(fields, bot_token)
        if not hmac.compare_digest(expected_hash.encode("utf-8"), received_hash.encode("utf-8")):
            logger.debug("init_data.hash_mismatch fields=%s", sorted(fields))
            return None

        if max_age_seconds > 0:
            auth_date = int(fields.get("auth_date", "0"))
            current = time.time() if now is None else now
            if current - auth_date > max_age_seconds:
                logger.info("init_data.expired auth_date=%s max_age=%d", auth_date, max_age_seconds)
                return None

        return _identity_from_user_field(fields.get("user"))
    except Exception:
        logger.debug("init_data.parse_failed", exc_info=True)
        return None
