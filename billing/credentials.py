from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .models import VpnCredential
from .db import as_utc_aware, clean_text
from .repository import BillingStateError


class VpnCredentialStore:
    """
    Local cache of the credential each user currently holds.

    `rotate` is the only writer. It deactivates the previous active row and
    inserts the new one inside a single savepoint, so readers see either the
    old credential or the new one. Old rows are kept as history.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_active(self, user_ref: str) -> Optional[VpnCredential]:
        normalized = clean_text(user_ref)
        if not normalized:
            return None
        query = (
            select(VpnCredential)
            .where(VpnCredential.user_ref == normalized, VpnCredential.is_active.is_(True))
            .order_by(VpnCredential.id.desc())
            .limit(1)
        )
        return self.session.scalar(query)

    def rotate(
        self,
        user_ref: str,
        panel_username: str,
        credential_value: str,
        *,
        now: Optional[datetime] = None,
    ) -> VpnCredential:
        normalized = clean_text(user_ref)
        value = clean_text(credential_value)
        if not normalized or not value:
            raise BillingStateError("user_ref and credential_value are required")
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        with self.session.begin_nested():
            self.session.execute(
                update(VpnCredential)
                .where(VpnCredential.user_ref == normalized, VpnCredential.is_active.is_(True))
                .values(is_active=False, revoked_at=current)
                .execution_options(synchronize_session="fetch")
            )
            row = VpnCredential(
                user_ref=normalized,
                panel_username=clean_text(panel_username) or normalized,
                credential_value=value,
                is_active=True,
                created_at=current,
            )
            self.session.add(row)
            self.session.flush()
        return row

    def history(self, user_ref: str, limit: int = 20) -> list[VpnCredential]:
        query = (
            select(VpnCredential)
            .where(VpnCredential.user_ref == clean_text(user_ref))
            .order_by(VpnCredential.id.desc())
            .limit(max(1, min(int(limit), 100)))
        )
        return list(self.session.scalars(query).all())
