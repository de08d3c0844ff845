from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from observability import get_logger, log_event
from runtime_metrics import record_counter_metric

_LOGGER = get_logger("subvpn.vpn.client")


class ProvisioningError(RuntimeError):
    """Panel unreachable, timed out or answered with something unusable. Retryable."""


class PanelNotFound(ProvisioningError):
    pass


@dataclass(frozen=True)
class PanelUser:
    username: str
    status: str
    expire: Optional[int]
    used_traffic: int
    data_limit: int
    subscription_url: Optional[str]
    links: tuple[str, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PanelUser":
        username = str(payload.get("username") or "").strip()
        if not username:
            raise ProvisioningError("panel user payload has no username")
        expire_raw = payload.get("expire")
        links = payload.get("links") if isinstance(payload.get("links"), list) else []
        return cls(
            username=username,
            status=str(payload.get("status") or "").strip().lower(),
            expire=int(expire_raw) if isinstance(expire_raw, (int, float)) and expire_raw > 0 else None,
            used_traffic=int(payload.get("used_traffic") or 0),
            data_limit=int(payload.get("data_limit") or 0),
            subscription_url=str(payload.get("subscription_url") or "").strip() or None,
            links=tuple(str(item) for item in links if str(item).strip()),
            raw=dict(payload),
        )


class MarzbanClient:
    """
    Async client for the Marzban panel REST API.

    Authentication is a bearer token from `/api/admin/token`. A `401` on any
    call drops the token, logs in again and retries that call once.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._token: str | None = None
        self._auth_lock = asyncio.Lock()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            timeout = httpx.Timeout(self.timeout_seconds, connect=min(5.0, self.timeout_seconds))
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def authenticate(self, *, stale_token: str | None = None) -> str:
        async with self._auth_lock:
            # Another coroutine may have refreshed the token while we waited.
            if self._token and self._token != stale_token:
                return self._token
            client = self._ensure_client()
            try:
                resp = await client.post(
                    "/api/admin/token",
                    data={"username": self.username, "password": self.password},
                )
            except httpx.HTTPError as exc:
                raise ProvisioningError(f"panel login failed: {exc}") from exc
            if resp.status_code != 200:
                raise ProvisioningError(f"panel login failed: status={resp.status_code}")
            try:
                token = str(resp.json().get("access_token") or "").strip()
            except (ValueError, AttributeError) as exc:
                raise ProvisioningError("panel login returned a malformed body") from exc
            if not token:
                raise ProvisioningError("panel login returned no access_token")
            self._token = token
            log_event(_LOGGER, logging.INFO, "vpn.panel.authenticated", base_url=self.base_url)
            return token

    async def _send(self, method: str, path: str, token: str, payload: Optional[Dict[str, Any]]) -> httpx.Response:
        client = self._ensure_client()
        try:
            return await client.request(method, path, json=payload, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException as exc:
            record_counter_metric(name="vpn.panel.timeout")
            raise ProvisioningError(f"panel {method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"panel {method} {path} failed: {exc}") from exc

    async def request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        token = self._token or await self.authenticate()
        resp = await self._send(method, path, token, payload)
        if resp.status_code == 401:
            log_event(_LOGGER, logging.INFO, "vpn.panel.reauthenticate", method=method, path=path)
            token = await self.authenticate(stale_token=token)
            resp = await self._send(method, path, token, payload)
        if resp.status_code == 404:
            if allow_not_found:
                return None
            raise PanelNotFound(f"panel {method} {path}: not found")
        if resp.status_code >= 400:
            raise ProvisioningError(
                f"panel {method} {path} failed: status={resp.status_code} body={(resp.text or '')[:200]}"
            )
        try:
            data = resp.json() if resp.content else {}
        except ValueError as exc:
            raise ProvisioningError(f"panel {method} {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ProvisioningError(f"panel {method} {path} returned a non-object body")
        return data

    async def get_user(self, username: str) -> Optional[PanelUser]:
        data = await self.request("GET", f"/api/user/{username}", allow_not_found=True)
        return PanelUser.from_payload(data) if data is not None else None

    async def create_user(self, payload: Dict[str, Any]) -> PanelUser:
        data = await self.request("POST", "/api/user", payload=payload)
        return PanelUser.from_payload(data or {})

    async def modify_user(self, username: str, payload: Dict[str, Any]) -> PanelUser:
        data = await self.request("PUT", f"/api/user/{username}", payload=payload)
        return PanelUser.from_payload(data or {})

    async def revoke_subscription(self, username: str) -> PanelUser:
        data = await self.request("POST", f"/api/user/{username}/revoke_sub")
        return PanelUser.from_payload(data or {})
