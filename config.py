import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Do not treat empty pre-existing env vars as authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

_ENV_ONLY_KEYS = {
    "AUTH_TOKEN_SECRET",
    "ADMIN_API_KEY",
    "TELEGRAM_BOT_TOKEN",
    "YOOKASSA_SECRET_KEY",
    "MARZBAN_PASSWORD",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value or "").split(",") if item.strip()]


API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "3001"))
_root_path = str(_get("ROOT_PATH", "")).strip()
if _root_path and not _root_path.startswith("/"):
    _root_path = f"/{_root_path}"
ROOT_PATH = _root_path.rstrip("/") if _root_path else ""
APP_VERSION = str(_get("APP_VERSION", "1.2.0"))
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"

DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.subvpn', 'subvpn.db')}",
    )
).strip()
# The contest tables belong to the bot; they may live in another database.
CONTEST_DATABASE_URL = str(_get("CONTEST_DATABASE_URL", DATABASE_URL)).strip() or DATABASE_URL
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

AUTH_TOKEN_SECRET = str(_get("AUTH_TOKEN_SECRET", "")).strip()
AUTH_TOKEN_TTL_SECONDS = int(_get("AUTH_TOKEN_TTL_SECONDS", "604800"))
ADMIN_API_KEY = str(_get("ADMIN_API_KEY", "")).strip()
ADMIN_TELEGRAM_IDS = [int(item) for item in _parse_list(_get("ADMIN_TELEGRAM_IDS", "")) if item.isdigit()]
TELEGRAM_BOT_TOKEN = str(_get("TELEGRAM_BOT_TOKEN", "")).strip()
TELEGRAM_BOT_USERNAME = str(_get("TELEGRAM_BOT_USERNAME", "outlivion_bot")).strip().lstrip("@")
TELEGRAM_API_BASE_URL = str(_get("TELEGRAM_API_BASE_URL", "https://api.telegram.org")).strip().rstrip("/")
TELEGRAM_INIT_DATA_MAX_AGE_SECONDS = int(_get("TELEGRAM_INIT_DATA_MAX_AGE_SECONDS", "86400"))

PAYMENT_PROVIDER = str(_get("PAYMENT_PROVIDER", "yookassa")).strip().lower() or "yookassa"
YOOKASSA_SHOP_ID = str(_get("YOOKASSA_SHOP_ID", "")).strip()
YOOKASSA_SECRET_KEY = str(_get("YOOKASSA_SECRET_KEY", "")).strip()
YOOKASSA_API_BASE_URL = str(_get("YOOKASSA_API_BASE_URL", "https://api.yookassa.ru/v3")).strip().rstrip("/")
YOOKASSA_RETURN_URL = str(_get("YOOKASSA_RETURN_URL", "")).strip()
YOOKASSA_TIMEOUT_SECONDS = float(_get("YOOKASSA_TIMEOUT_SECONDS", "20"))
YOOKASSA_WEBHOOK_IP_CHECK = _parse_bool(_get("YOOKASSA_WEBHOOK_IP_CHECK", "false"), False)
YOOKASSA_WEBHOOK_IPS = _parse_list(
    _get(
        "YOOKASSA_WEBHOOK_IPS",
        "185.71.76.0/27,185.71.77.0/27,77.75.153.0/25,77.75.156.11,77.75.156.35,77.75.154.128/25,2a02:5180::/32",
    )
)

MARZBAN_API_URL = str(_get("MARZBAN_API_URL", "http://127.0.0.1:8000")).strip().rstrip("/")
MARZBAN_USERNAME = str(_get("MARZBAN_USERNAME", "admin")).strip()
MARZBAN_PASSWORD = str(_get("MARZBAN_PASSWORD", "")).strip()
MARZBAN_PUBLIC_URL = str(_get("MARZBAN_PUBLIC_URL", "https://vpn.outlivion.space/bot-api")).strip().rstrip("/")
MARZBAN_TIMEOUT_SECONDS = float(_get("MARZBAN_TIMEOUT_SECONDS", "15"))
MARZBAN_INBOUND_TAG = str(_get("MARZBAN_INBOUND_TAG", "VLESS_REALITY")).strip() or "VLESS_REALITY"

PLANS = _get("PLANS", [])
DEFAULT_PLAN_DURATION_DAYS = max(1, int(_get("DEFAULT_PLAN_DURATION_DAYS", "30")))
TRIAL_PLAN_ID = str(_get("TRIAL_PLAN_ID", "plan_7")).strip() or "plan_7"

AWARD_RETRY_INTERVAL_SECONDS = max(1, int(_get("AWARD_RETRY_INTERVAL_SECONDS", "300")))
AWARD_RETRY_MAX_ATTEMPTS = max(1, int(_get("AWARD_RETRY_MAX_ATTEMPTS", "3")))
AWARD_RECOVERY_SCAN_ENABLED = _parse_bool(_get("AWARD_RECOVERY_SCAN_ENABLED", "true"), True)
AWARD_SCHEDULER_ENABLED = _parse_bool(_get("AWARD_SCHEDULER_ENABLED", "true"), True)

NOTIFY_USERS_ENABLED = _parse_bool(_get("NOTIFY_USERS_ENABLED", "true"), True)
OPERATOR_ALERT_CHAT_IDS = _parse_list(_get("OPERATOR_ALERT_CHAT_IDS", ""))
NOTIFY_TIMEOUT_SECONDS = float(_get("NOTIFY_TIMEOUT_SECONDS", "10"))

CORS_ORIGINS = [
    origin.strip()
    for origin in str(
        _get(
            "CORS_ORIGINS",
            "http://127.0.0.1:5173,http://localhost:5173",
        )
    ).split(",")
    if origin.strip()
]
