from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import as_utc_aware, clean_text
from .models import BillingAuditLog, Order, OrderStatus, PaymentEvent


class BillingStateError(RuntimeError):
    pass


class OrderNotFound(BillingStateError):
    pass


class DuplicateOrder(BillingStateError):
    pass


class OrderConflict(BillingStateError):
    pass


class InvalidState(BillingStateError):
    pass


class InvalidCredential(BillingStateError):
    pass


class OrderRepository:
    """Durable order records; every status transition is idempotent."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _require(self, order_id: str) -> Order:
        order = self.session.get(Order, clean_text(order_id))
        if order is None:
            raise OrderNotFound(f"order not found: {order_id}")
        return order

    def create_pending(
        self,
        order_id: str,
        plan_id: str,
        user_ref: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Order:
        normalized_id = clean_text(order_id)
        if not normalized_id:
            raise BillingStateError("order_id is required")
        if self.session.get(Order, normalized_id) is not None:
            raise DuplicateOrder(f"order already exists: {normalized_id}")
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        order = Order(
            id=normalized_id,
            plan_id=clean_text(plan_id),
            user_ref=clean_text(user_ref) or None,
            status=OrderStatus.PENDING,
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(order)
                self.session.flush()
        except IntegrityError as exc:
            # Concurrent insert with the same id.
            raise DuplicateOrder(f"order already exists: {normalized_id}") from exc
        return order

    def attach_payment_intent(
        self,
        order_id: str,
        gateway_payment_id: str,
        amount_value: str,
        amount_currency: str,
    ) -> Order:
        payment_id = clean_text(gateway_payment_id)
        if not payment_id:
            raise BillingStateError("gateway_payment_id is required")
        value = clean_text(amount_value)
        currency = clean_text(amount_currency).upper()
        order = self._require(order_id)
        if order.gateway_payment_id:
            if order.gateway_payment_id != payment_id:
                raise OrderConflict(
                    f"order {order.id} already has payment {order.gateway_payment_id}, refusing {payment_id}"
                )
            if (order.amount_value, order.amount_currency) != (value, currency):
                raise OrderConflict(f"order {order.id} payment {payment_id} was attached with a different amount")
            return order

        owner = self.find_by_gateway_payment_id(payment_id)
        if owner is not None and owner.id != order.id:
            raise OrderConflict(f"payment {payment_id} is already attached to order {owner.id}")
        order.gateway_payment_id = payment_id
        order.amount_value = value
        order.amount_currency = currency
        try:
            with self.session.begin_nested():
                self.session.flush()
        except IntegrityError as exc:
            raise OrderConflict(f"payment {payment_id} is already attached to another order") from exc
        return order

    def mark_paid_with_credential(
        self,
        order_id: str,
        credential: str,
        *,
        paid_at: Optional[datetime] = None,
    ) -> Order:
        value = clean_text(credential)
        if not value:
            raise InvalidCredential(f"refusing to mark order {order_id} paid with an empty credential")
        order = self._require(order_id)
        if order.status == OrderStatus.CANCELED:
            raise InvalidState(f"order {order.id} cannot be marked paid from status={order.status.value}")
        if order.status == OrderStatus.PAID:
            if order.credential == value:
                return order
            if order.credential:
                # Paid with a credential is terminal.
                raise InvalidState(f"order {order.id} is already paid with a different credential")
            order.credential = value
            self.session.flush()
            return order

        order.status = OrderStatus.PAID
        order.credential = value
        order.paid_at = as_utc_aware(paid_at) if paid_at else datetime.now(timezone.utc)
        self.session.flush()
        return order

    def mark_canceled(self, order_id: str) -> Order:
        order = self._require(order_id)
        if order.status == OrderStatus.CANCELED:
            return order
        if order.status == OrderStatus.PAID:
            raise InvalidState(f"order {order.id} cannot be canceled from status={order.status.value}")
        order.status = OrderStatus.CANCELED
        self.session.flush()
        return order

    def find_by_id(self, order_id: str) -> Optional[Order]:
        normalized = clean_text(order_id)
        if not normalized:
            return None
        return self.session.get(Order, normalized)

    def find_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        normalized = clean_text(gateway_payment_id)
        if not normalized:
            return None
        return self.session.scalar(select(Order).where(Order.gateway_payment_id == normalized))

    def find_by_user_ref(self, user_ref: str, limit: int = 50) -> list[Order]:
        normalized = clean_text(user_ref)
        if not normalized:
            return []
        query = (
            select(Order)
            .where(Order.user_ref == normalized)
            .order_by(Order.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return list(self.session.scalars(query).all())

    def last_paid_credential(self, user_ref: str) -> Optional[str]:
        query = (
            select(Order.credential)
            .where(
                Order.user_ref == clean_text(user_ref),
                Order.status == OrderStatus.PAID,
                Order.credential.is_not(None),
            )
            .order_by(Order.paid_at.desc(), Order.created_at.desc())
            .limit(1)
        )
        return self.session.scalar(query)

    def has_completed_payment(self, user_ref: str, *, before: Optional[datetime] = None) -> bool:
        """The single authority for "has this user ever paid", optionally before a cutoff."""

        normalized = clean_text(user_ref)
        if not normalized:
            return False
        condition = [Order.user_ref == normalized, Order.status == OrderStatus.PAID]
        if before is not None:
            condition.append(Order.created_at < as_utc_aware(before))
        return bool(self.session.scalar(select(exists().where(*condition))))

    def list_paid_orders(
        self,
        *,
        created_from: datetime,
        created_to: datetime,
        after: Optional[tuple[datetime, str]] = None,
        limit: int = 500,
    ) -> list[Order]:
        """One page of paid orders in the window, ordered by (created_at, id); pass the last row as `after`."""

        conditions = [
            Order.status == OrderStatus.PAID,
            Order.user_ref.is_not(None),
            Order.created_at >= as_utc_aware(created_from),
            Order.created_at <= as_utc_aware(created_to),
        ]
        if after is not None:
            after_created, after_id = as_utc_aware(after[0]), clean_text(after[1])
            conditions.append(
                or_(
                    Order.created_at > after_created,
                    and_(Order.created_at == after_created, Order.id > after_id),
                )
            )
        query = (
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.asc(), Order.id.asc())
            .limit(max(1, min(int(limit), 5000)))
        )
        return list(self.session.scalars(query).all())

    def has_payment_event(
        self,
        *,
        event_id: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
        event: Optional[str] = None,
    ) -> bool:
        normalized_event_id = clean_text(event_id)
        if normalized_event_id:
            found = self.session.scalar(select(exists().where(PaymentEvent.event_id == normalized_event_id)))
            if found:
                return True
        payment_id = clean_text(gateway_payment_id)
        event_type = clean_text(event)
        if payment_id and event_type:
            return bool(
                self.session.scalar(
                    select(
                        exists().where(
                            PaymentEvent.gateway_payment_id == payment_id,
                            PaymentEvent.event == event_type,
                        )
                    )
                )
            )
        return False

    def record_payment_event(
        self,
        *,
        gateway_payment_id: str,
        event: str,
        order_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> bool:
        """Journal a processed notification. Returns False when it was already journaled."""

        if self.has_payment_event(event_id=event_id, gateway_payment_id=gateway_payment_id, event=event):
            return False
        row = PaymentEvent(
            event_id=clean_text(event_id) or None,
            gateway_payment_id=clean_text(gateway_payment_id),
            event=clean_text(event),
            order_id=clean_text(order_id) or None,
        )
        try:
            with self.session.begin_nested():
                self.session.add(row)
                self.session.flush()
        except IntegrityError:
            return False
        return True

    def record_audit_log(
        self,
        *,
        event_type: str,
        raw_payload: str,
        outcome: str,
        provider: str = "yookassa",
        external_event_id: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
        order_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> BillingAuditLog:
        log = BillingAuditLog(
            provider=provider,
            event_type=str(event_type or "unknown")[:64],
            external_event_id=external_event_id,
            gateway_payment_id=gateway_payment_id,
            order_id=order_id,
            source_ip=source_ip,
            raw_payload=raw_payload,
            outcome=outcome,
            detail=detail,
            occurred_at=as_utc_aware(occurred_at) if occurred_at else datetime.now(timezone.utc),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(self, *, order_id: Optional[str] = None, limit: int = 50) -> list[BillingAuditLog]:
        query = select(BillingAuditLog)
        if order_id:
            query = query.where(BillingAuditLog.order_id == clean_text(order_id))
        query = query.order_by(BillingAuditLog.occurred_at.desc()).limit(max(1, min(int(limit), 200)))
        return list(self.session.scalars(query).all())
