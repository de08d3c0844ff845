from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from config import MARZBAN_INBOUND_TAG, MARZBAN_PUBLIC_URL
from observability import get_logger, log_event

from .client import MarzbanClient, PanelNotFound, PanelUser, ProvisioningError

_LOGGER = get_logger("subvpn.vpn.service")
_SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ProvisionedCredential:
    panel_username: str
    value: str


class VpnProvisioningService:
    """
    Create, renew, inspect and rotate a user's account on the VPN panel.

    Renewal is additive: paying again while the account is active extends the
    current expiry instead of restarting it. An expired or disabled account
    starts again from now.
    """

    def __init__(
        self,
        client: MarzbanClient,
        *,
        public_url: str = MARZBAN_PUBLIC_URL,
        inbound_tag: str = MARZBAN_INBOUND_TAG,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.public_url = public_url.rstrip("/")
        self.inbound_tag = inbound_tag
        self._clock = clock

    @staticmethod
    def _username_candidates(user_ref: str) -> list[str]:
        ref = str(user_ref or "").strip()
        if not ref:
            raise ProvisioningError("user_ref is required")
        candidates = [ref]
        # Accounts created by the bot before the tg_ prefix existed use the bare id.
        if ref.startswith("tg_") and ref[3:].isdigit():
            candidates.append(ref[3:])
        return candidates

    async def _find_user(self, user_ref: str) -> Optional[PanelUser]:
        for username in self._username_candidates(user_ref):
            user = await self.client.get_user(username)
            if user is not None:
                return user
        return None

    def credential_for(self, user: PanelUser) -> Optional[str]:
        if user.subscription_url:
            if user.subscription_url.startswith(("http://", "https://")):
                return user.subscription_url
            return f"{self.public_url}{user.subscription_url}"
        return user.links[0] if user.links else None

    def _require_credential(self, user: PanelUser) -> ProvisionedCredential:
        value = self.credential_for(user)
        if not value:
            raise ProvisioningError(f"panel user {user.username} has neither subscription_url nor links")
        return ProvisionedCredential(panel_username=user.username, value=value)

    async def activate(self, user_ref: str, duration_days: int) -> ProvisionedCredential:
        days = int(duration_days)
        if days <= 0:
            raise ProvisioningError(f"duration_days must be positive, got {duration_days}")
        now = int(self._clock())
        extension = days * _SECONDS_PER_DAY
        user = await self._find_user(user_ref)
        if user is None:
            user = await self.client.create_user(
                {
                    "username": self._username_candidates(user_ref)[0],
                    "proxies": {"vless": {}},
                    "inbounds": {"vless": [self.inbound_tag]},
                    "expire": now + extension,
                    "data_limit": 0,
                    "status": "active",
                }
            )
            log_event(_LOGGER, logging.INFO, "vpn.account.created", user_ref=user_ref, username=user.username, days=days)
        else:
            running = user.status == "active" and user.expire is not None and user.expire > now
            base = user.expire if running and user.expire is not None else now
            user = await self.client.modify_user(user.username, {"expire": base + extension, "status": "active"})
            log_event(
                _LOGGER,
                logging.INFO,
                "vpn.account.extended" if running else "vpn.account.reactivated",
                user_ref=user_ref,
                username=user.username,
                days=days,
                expire=user.expire,
            )
        return self._require_credential(user)

    async def current_config(self, user_ref: str) -> Optional[str]:
        user = await self._find_user(user_ref)
        if user is None:
            return None
        return self.credential_for(user)

    async def get_status(self, user_ref: str) -> Optional[PanelUser]:
        return await self._find_user(user_ref)

    async def rotate_credential(self, user_ref: str) -> ProvisionedCredential:
        user = await self._find_user(user_ref)
        if user is None:
            raise PanelNotFound(f"no panel account for {user_ref}")
        await self.client.revoke_subscription(user.username)
        refreshed = await self.client.get_user(user.username)
        if refreshed is None:
            raise PanelNotFound(f"panel account {user.username} disappeared during rotation")
        log_event(_LOGGER, logging.INFO, "vpn.account.rotated", user_ref=user_ref, username=user.username)
        return self._require_credential(refreshed)

    async def renew(self, user_ref: str, days: int) -> ProvisionedCredential:
        return await self.activate(user_ref, days)
