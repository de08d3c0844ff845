from __future__ import annotations

import hashlib
import hmac
import json
import time
from urllib.parse import urlencode

import pytest

from auth import (
    ANONYMOUS,
    AdminKey,
    AuthConfigError,
    AuthError,
    TelegramUser,
    decode_access_token,
    issue_access_token,
    resolve_auth_context,
    telegram_id_from_ref,
    user_ref_for,
    verify_telegram_init_data,
)

BOT_TOKEN = "123456:TEST-TOKEN"


def sign_init_data(fields: dict, bot_token: str = BOT_TOKEN) -> str:
    data_check_string = "\n".join(f"{key}={fields[key]}" for key in sorted(fields))
    secret_key = hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    signature = hmac.new(secret_key, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()
    return urlencode({**fields, "hash": signature})


def _fields(user_id: int = 42, *, auth_date: int | None = None) -> dict:
    return {
        "auth_date": str(auth_date if auth_date is not None else int(time.time())),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps({"id": user_id, "first_name": "Ann", "username": "ann"}, separators=(",", ":")),
    }


def test_valid_init_data_returns_user() -> None:
    user = verify_telegram_init_data(sign_init_data(_fields(42)), BOT_TOKEN, admin_ids=[7])
    assert user == TelegramUser(id=42, username="ann", first_name="Ann", is_admin=False)
    assert user.user_ref == "tg_42"


def test_admin_flag_comes_from_admin_ids() -> None:
    user = verify_telegram_init_data(sign_init_data(_fields(7)), BOT_TOKEN, admin_ids=[7])
    assert user.is_admin is True


def test_tampered_init_data_is_rejected() -> None:
    signed = sign_init_data(_fields(42))
    tampered = signed.replace("%22id%22%3A42", "%22id%22%3A43")
    assert tampered != signed
    with pytest.raises(AuthError, match="hash"):
        verify_telegram_init_data(tampered, BOT_TOKEN)
    with pytest.raises(AuthError):
        verify_telegram_init_data(sign_init_data(_fields(42), "other:token"), BOT_TOKEN)


def test_stale_init_data_is_rejected() -> None:
    old = int(time.time()) - 3 * 86400
    with pytest.raises(AuthError, match="too old"):
        verify_telegram_init_data(sign_init_data(_fields(42, auth_date=old)), BOT_TOKEN, max_age_seconds=86400)


def test_missing_hash_and_missing_bot_token() -> None:
    with pytest.raises(AuthError):
        verify_telegram_init_data(urlencode(_fields(42)), BOT_TOKEN)
    with pytest.raises(AuthConfigError):
        verify_telegram_init_data(sign_init_data(_fields(42)), "")


def test_access_token_round_trip_and_tampering() -> None:
    token = issue_access_token(TelegramUser(id=42, username="ann"), "secret", 3600)
    user = decode_access_token(token, "secret", admin_ids=[42])
    assert user.id == 42 and user.username == "ann" and user.is_admin is True
    with pytest.raises(AuthError):
        decode_access_token(token, "another-secret")
    with pytest.raises(AuthConfigError):
        issue_access_token(TelegramUser(id=1), "")


def test_resolve_auth_context_precedence() -> None:
    common = dict(token_secret="secret", bot_token=BOT_TOKEN, admin_api_key="adm-key")
    token = issue_access_token(TelegramUser(id=5), "secret")

    assert resolve_auth_context(authorization=None, admin_key=None, init_data=None, **common) == ANONYMOUS
    assert isinstance(
        resolve_auth_context(authorization=None, admin_key="adm-key", init_data=None, **common), AdminKey
    )
    with pytest.raises(AuthError):
        resolve_auth_context(authorization=None, admin_key="wrong", init_data=None, **common)

    bearer = resolve_auth_context(authorization=f"Bearer {token}", admin_key=None, init_data=None, **common)
    assert bearer.id == 5
    with pytest.raises(AuthError):
        resolve_auth_context(authorization=f"Token {token}", admin_key=None, init_data=None, **common)

    from_init = resolve_auth_context(
        authorization=None, admin_key=None, init_data=sign_init_data(_fields(9)), **common
    )
    assert from_init.id == 9


def test_user_ref_helpers() -> None:
    assert user_ref_for(42) == "tg_42"
    assert telegram_id_from_ref("tg_42") == 42
    assert telegram_id_from_ref("42") == 42
    assert telegram_id_from_ref("someone") is None
    assert telegram_id_from_ref(None) is None
