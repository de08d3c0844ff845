from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Union
from urllib.parse import parse_qsl

import jwt


class AuthError(RuntimeError):
    pass


class AuthConfigError(AuthError):
    pass


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class TelegramUser:
    id: int
    username: str | None = None
    first_name: str | None = None
    is_admin: bool = False

    @property
    def user_ref(self) -> str:
        return user_ref_for(self.id)


@dataclass(frozen=True)
class AdminKey:
    pass


AuthContext = Union[Anonymous, TelegramUser, AdminKey]

ANONYMOUS = Anonymous()
_USER_REF_PREFIX = "tg_"


def user_ref_for(telegram_id: int) -> str:
    return f"{_USER_REF_PREFIX}{int(telegram_id)}"


def telegram_id_from_ref(user_ref: str | None) -> int | None:
    raw = str(user_ref or "").strip()
    if raw.startswith(_USER_REF_PREFIX):
        raw = raw[len(_USER_REF_PREFIX):]
    return int(raw) if raw.isdigit() else None


def is_admin_context(context: AuthContext) -> bool:
    if isinstance(context, AdminKey):
        return True
    return isinstance(context, TelegramUser) and context.is_admin


def issue_access_token(user: TelegramUser, secret: str, ttl_seconds: int = 3600) -> str:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    now = int(time.time())
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "first_name": user.first_name,
        "iat": now,
        "exp": now + max(60, int(ttl_seconds)),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_access_token(token: str, secret: str, admin_ids: Iterable[int] = ()) -> TelegramUser:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("invalid token") from exc

    subject = str(payload.get("sub") or "").strip()
    if not subject.isdigit():
        raise AuthError("invalid token subject")
    telegram_id = int(subject)
    return TelegramUser(
        id=telegram_id,
        username=str(payload.get("username") or "").strip() or None,
        first_name=str(payload.get("first_name") or "").strip() or None,
        is_admin=telegram_id in set(admin_ids),
    )


def extract_bearer_token(authorization: str | None) -> str:
    raw = str(authorization or "").strip()
    if not raw:
        raise AuthError("missing Authorization header")
    prefix = "Bearer "
    if not raw.startswith(prefix):
        raise AuthError("invalid Authorization header")
    token = raw[len(prefix):].strip()
    if not token:
        raise AuthError("empty bearer token")
    return token


def verify_telegram_init_data(
    init_data: str,
    bot_token: str,
    *,
    max_age_seconds: int = 86400,
    admin_ids: Iterable[int] = (),
    now: Optional[int] = None,
) -> TelegramUser:
    """
    Validate Telegram WebApp `initData` and return the signed-in user.

    - secret_key = HMAC_SHA256(key="WebAppData", msg=bot_token)
    - hash = hex(HMAC_SHA256(key=secret_key, msg=data_check_string)), where the
      data check string is every `key=value` pair except `hash`, sorted by key
      and joined with newlines.
    - `auth_date` must not be older than `max_age_seconds`.
    """

    if not bot_token:
        raise AuthConfigError("TELEGRAM_BOT_TOKEN is missing")
    pairs = parse_qsl(str(init_data or ""), keep_blank_values=True)
    fields = {key: value for key, value in pairs if key != "hash"}
    provided_hash = next((value for key, value in pairs if key == "hash"), "")
    if not provided_hash:
        raise AuthError("hash not found in initData")

    data_check_string = "\n".join(f"{key}={fields[key]}" for key in sorted(fields))
    secret_key = hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    expected = hmac.new(secret_key, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode("utf-8"), provided_hash.lower().encode("utf-8")):
        raise AuthError("initData hash verification failed")

    auth_date_raw = str(fields.get("auth_date") or "").strip()
    if not auth_date_raw.isdigit():
        raise AuthError("invalid auth_date")
    current = int(time.time()) if now is None else int(now)
    if current - int(auth_date_raw) > int(max_age_seconds):
        raise AuthError("initData is too old")

    try:
        user = json.loads(fields.get("user") or "")
    except json.JSONDecodeError as exc:
        raise AuthError("invalid user payload in initData") from exc
    if not isinstance(user, dict) or not isinstance(user.get("id"), int):
        raise AuthError("invalid user.id in initData")
    telegram_id = int(user["id"])
    return TelegramUser(
        id=telegram_id,
        username=str(user.get("username") or "").strip() or None,
        first_name=str(user.get("first_name") or "").strip() or None,
        is_admin=telegram_id in set(admin_ids),
    )


def verify_admin_key(provided: str | None, expected: str) -> bool:
    candidate = str(provided or "").strip()
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def resolve_auth_context(
    *,
    authorization: str | None,
    admin_key: str | None,
    init_data: str | None,
    token_secret: str,
    bot_token: str,
    admin_api_key: str,
    admin_ids: Iterable[int] = (),
    init_data_max_age_seconds: int = 86400,
) -> AuthContext:
    """Resolve request credentials; presented-but-invalid credentials raise `AuthError`."""

    admin_ids = tuple(admin_ids)
    if admin_key:
        if verify_admin_key(admin_key, admin_api_key):
            return AdminKey()
        raise AuthError("invalid admin key")
    if authorization:
        token = extract_bearer_token(authorization)
        return decode_access_token(token, token_secret, admin_ids)
    if init_data:
        return verify_telegram_init_data(
            init_data,
            bot_token,
            max_age_seconds=init_data_max_age_seconds,
            admin_ids=admin_ids,
        )
    return ANONYMOUS
