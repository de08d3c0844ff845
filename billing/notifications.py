from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from auth import telegram_id_from_ref
from config import (
    NOTIFY_TIMEOUT_SECONDS,
    NOTIFY_USERS_ENABLED,
    OPERATOR_ALERT_CHAT_IDS,
    TELEGRAM_API_BASE_URL,
    TELEGRAM_BOT_TOKEN,
)
from observability import get_logger, log_event
from runtime_metrics import record_counter_metric

_LOGGER = get_logger("subvpn.billing.notifications")


class TelegramNotifier:
    """
    Best-effort messages through the Telegram Bot API.

    Nothing here raises: a failed notification is logged and counted, the
    caller carries on.
    """

    def __init__(
        self,
        *,
        bot_token: str = TELEGRAM_BOT_TOKEN,
        operator_chat_ids: Iterable[str] = OPERATOR_ALERT_CHAT_IDS,
        users_enabled: bool = NOTIFY_USERS_ENABLED,
        api_base_url: str = TELEGRAM_API_BASE_URL,
        timeout_seconds: float = NOTIFY_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.operator_chat_ids = [str(item).strip() for item in operator_chat_ids if str(item).strip()]
        self.users_enabled = users_enabled
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _send(self, chat_id: str | int, text: str) -> bool:
        if not self.bot_token:
            return False
        url = f"{self.api_base_url}/bot{self.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(url, json={"chat_id": chat_id, "text": text, "disable_web_page_preview": True})
            if resp.status_code != 200:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "notify.telegram.rejected",
                    chat_id=chat_id,
                    status_code=resp.status_code,
                )
                record_counter_metric(name="notify.telegram.failed")
                return False
        except httpx.HTTPError as exc:
            log_event(_LOGGER, logging.WARNING, "notify.telegram.failed", chat_id=chat_id, error=str(exc))
            record_counter_metric(name="notify.telegram.failed")
            return False
        return True

    async def notify_user(self, user_ref: str, text: str) -> bool:
        if not self.users_enabled:
            return False
        chat_id = telegram_id_from_ref(user_ref)
        if chat_id is None:
            return False
        return await self._send(chat_id, text)

    async def alert_operators(self, title: str, **fields: Any) -> int:
        if not self.operator_chat_ids:
            return 0
        lines = [f"[ALERT] {title}"] + [f"{key}: {value}" for key, value in sorted(fields.items())]
        text = "\n".join(lines)
        delivered = 0
        for chat_id in self.operator_chat_ids:
            if await self._send(chat_id, text):
                delivered += 1
        return delivered
