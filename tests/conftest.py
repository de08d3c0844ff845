from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from billing import build_session_factory, init_billing_db
from contest import init_contest_db


class FakePanel:
    """In-memory Marzban panel behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.tokens_issued = 0
        self.fail_next = 0
        self.reject_token_once = False
        self._sub_seq = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _sub_url(self, username: str) -> str:
        self._sub_seq += 1
        return f"/sub/{username}-{self._sub_seq}"

    def add_user(self, username: str, *, expire: Optional[int], status: str = "active") -> Dict[str, Any]:
        user = {
            "username": username,
            "status": status,
            "expire": expire,
            "used_traffic": 0,
            "data_limit": 0,
            "subscription_url": self._sub_url(username),
            "links": [f"vless://{username}@vpn.example"],
        }
        self.users[username] = user
        return user

    def provisioning_calls(self) -> int:
        return sum(1 for method, path in self.calls if method in {"POST", "PUT"} and path.startswith("/api/user"))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if path == "/api/admin/token":
            self.tokens_issued += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.tokens_issued}", "token_type": "bearer"})
        if not str(request.headers.get("Authorization") or "").startswith("Bearer tok-"):
            return httpx.Response(401, json={"detail": "Not authenticated"})
        if self.reject_token_once:
            self.reject_token_once = False
            return httpx.Response(401, json={"detail": "Token expired"})
        if self.fail_next > 0:
            self.fail_next -= 1
            raise httpx.ReadTimeout("panel timed out", request=request)

        if path == "/api/user" and request.method == "POST":
            body = json.loads(request.content)
            username = body["username"]
            if username in self.users:
                return httpx.Response(409, json={"detail": "User already exists"})
            user = self.add_user(username, expire=body.get("expire"), status=body.get("status", "active"))
            return httpx.Response(200, json=user)

        parts = path.strip("/").split("/")
        if len(parts) >= 3 and parts[:2] == ["api", "user"]:
            username = parts[2]
            user = self.users.get(username)
            if user is None:
                return httpx.Response(404, json={"detail": "User not found"})
            if len(parts) == 3 and request.method == "GET":
                return httpx.Response(200, json=user)
            if len(parts) == 3 and request.method == "PUT":
                body = json.loads(request.content)
                user.update({key: value for key, value in body.items() if key in {"expire", "status", "data_limit"}})
                return httpx.Response(200, json=user)
            if len(parts) == 4 and parts[3] == "revoke_sub" and request.method == "POST":
                user["subscription_url"] = self._sub_url(username)
                return httpx.Response(200, json=user)
        return httpx.Response(404, json={"detail": "Not Found"})


@pytest.fixture
def fake_panel() -> FakePanel:
    return FakePanel()


@pytest.fixture
def session_factory():
    engine, factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_billing_db(engine, use_migrations=False)
    init_contest_db(engine, use_migrations=False)
    yield factory
    engine.dispose()


@pytest.fixture
def now_epoch() -> int:
    return int(time.time())
