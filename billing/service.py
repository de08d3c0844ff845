from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Final, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.exc import SQLAlchemyError

from config import YOOKASSA_WEBHOOK_IP_CHECK, YOOKASSA_WEBHOOK_IPS
from observability import get_logger, log_event
from runtime_metrics import record_counter_metric, record_timing_metric
from vpn import ProvisionedCredential, ProvisioningError, VpnProvisioningService

from .credentials import VpnCredentialStore
from .db import SessionFactory, as_utc_aware, session_scope
from .models import Order, OrderStatus
from .notifications import TelegramNotifier
from .plans import PlanCatalog
from .repository import BillingStateError, OrderConflict, OrderRepository

_LOGGER = get_logger("subvpn.billing.service")

EVENT_PAYMENT_SUCCEEDED: Final[str] = "payment.succeeded"
EVENT_PAYMENT_CANCELED: Final[str] = "payment.canceled"

AwardFn = Callable[[str, str, str, datetime], bool]
EnqueueRetryFn = Callable[..., Any]


class WebhookForbidden(RuntimeError):
    pass


class YooKassaAmount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: str
    currency: str

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return f"{value:.2f}"
        return value


class YooKassaPaymentObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: str = ""
    paid: bool = False
    amount: Optional[YooKassaAmount] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def order_id(self) -> Optional[str]:
        raw = self.metadata.get("orderId") or self.metadata.get("order_id")
        if raw is None:
            return None
        return str(raw).strip() or None

    @property
    def user_ref(self) -> Optional[str]:
        raw = self.metadata.get("userRef") or self.metadata.get("user_ref")
        if raw is None:
            return None
        return str(raw).strip() or None


class YooKassaNotification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["notification"]
    event: str = Field(min_length=1)
    object: YooKassaPaymentObject
    event_id: Optional[str] = None


def parse_allowed_networks(
    entries: Iterable[str],
) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
    for entry in entries:
        raw = str(entry or "").strip()
        if not raw:
            continue
        try:
            networks.append(ipaddress.ip_network(raw, strict=False))
        except ValueError:
            log_event(_LOGGER, logging.WARNING, "billing.webhook.bad_network", network=raw)
    return networks


def is_source_ip_allowed(
    source_ip: Optional[str],
    networks: Iterable[ipaddress.IPv4Network | ipaddress.IPv6Network],
) -> bool:
    try:
        address = ipaddress.ip_address(str(source_ip or "").strip())
    except ValueError:
        return False
    return any(address in network for network in networks)


@dataclass(frozen=True)
class SettlementResult:
    outcome: str
    order_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class _OrderSnapshot:
    id: str
    user_ref: Optional[str]
    plan_id: str
    status: OrderStatus
    credential: Optional[str]
    gateway_payment_id: Optional[str]
    created_at: datetime

    @classmethod
    def of(cls, order: Order) -> "_OrderSnapshot":
        return cls(
            id=order.id,
            user_ref=order.user_ref,
            plan_id=order.plan_id,
            status=order.status,
            credential=order.credential,
            gateway_payment_id=order.gateway_payment_id,
            created_at=as_utc_aware(order.created_at),
        )


class _KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] <= 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)


class SettlementPipeline:
    """
    Applies YooKassa payment notifications to orders.

    Every notification is acknowledged except one rejected by the source IP
    allow-list: problems on this side are logged and audited, never bounced
    back to the provider.

    Settlement of one order is serialized by an in-process lock; the payment
    event journal makes redeliveries no-ops once an effect has committed. A
    provisioning failure commits nothing, so a redelivery retries it.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        plans: PlanCatalog,
        provisioning: VpnProvisioningService,
        award: AwardFn,
        enqueue_retry: EnqueueRetryFn,
        notifier: Optional[TelegramNotifier] = None,
        ip_check_enabled: bool = YOOKASSA_WEBHOOK_IP_CHECK,
        allowed_networks: Iterable[str] = YOOKASSA_WEBHOOK_IPS,
    ) -> None:
        self._session_factory = session_factory
        self.plans = plans
        self.provisioning = provisioning
        self._award = award
        self._enqueue_retry = enqueue_retry
        self.notifier = notifier
        self.ip_check_enabled = ip_check_enabled
        self.allowed_networks = parse_allowed_networks(allowed_networks)
        self._locks = _KeyedLocks()

    async def handle(
        self,
        payload: Any,
        *,
        source_ip: Optional[str] = None,
        raw_payload: Optional[str] = None,
    ) -> SettlementResult:
        """Process one notification. Raises WebhookForbidden only for the IP allow-list."""

        raw = raw_payload if raw_payload is not None else json.dumps(payload, ensure_ascii=False, default=str)
        if self.ip_check_enabled and not is_source_ip_allowed(source_ip, self.allowed_networks):
            log_event(_LOGGER, logging.WARNING, "billing.webhook.forbidden", source_ip=source_ip)
            record_counter_metric(name="billing.webhook.forbidden")
            await self._audit(None, SettlementResult("forbidden"), raw, source_ip)
            raise WebhookForbidden(f"source ip {source_ip or '-'} is not allowed")

        started = datetime.now(timezone.utc)
        notification: Optional[YooKassaNotification] = None
        try:
            notification = YooKassaNotification.model_validate(payload)
        except ValidationError as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.webhook.invalid_payload",
                source_ip=source_ip,
                errors=exc.error_count(),
                detail=str(exc.errors(include_url=False)[:3]),
            )
            result = SettlementResult("invalid_payload", detail="payload failed validation")
        else:
            try:
                result = await self._settle(notification)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    _LOGGER,
                    logging.ERROR,
                    "billing.webhook.unhandled",
                    gateway_payment_id=notification.object.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                result = SettlementResult("error", order_id=notification.object.order_id, detail=str(exc))

        record_counter_metric(name=f"billing.webhook.{result.outcome}")
        record_timing_metric(
            name="billing.webhook.handle",
            duration_ms=(datetime.now(timezone.utc) - started).total_seconds() * 1000,
        )
        await self._audit(notification, result, raw, source_ip)
        return result

    async def _audit(
        self,
        notification: Optional[YooKassaNotification],
        result: SettlementResult,
        raw_payload: str,
        source_ip: Optional[str],
    ) -> None:
        def write() -> None:
            with session_scope(self._session_factory) as session:
                OrderRepository(session).record_audit_log(
                    event_type=notification.event if notification else "invalid",
                    raw_payload=raw_payload,
                    outcome=result.outcome,
                    external_event_id=notification.event_id if notification else None,
                    gateway_payment_id=notification.object.id if notification else None,
                    order_id=result.order_id,
                    source_ip=source_ip,
                    detail=result.detail,
                )

        try:
            await asyncio.to_thread(write)
        except SQLAlchemyError as exc:
            log_event(_LOGGER, logging.ERROR, "billing.audit.write_failed", outcome=result.outcome, error=str(exc))

    # ------------------------------------------------------------------
    # Order resolution
    # ------------------------------------------------------------------
    def _resolve_order_id(self, notification: YooKassaNotification) -> Optional[str]:
        explicit = notification.object.order_id
        if explicit:
            return explicit
        with session_scope(self._session_factory) as session:
            order = OrderRepository(session).find_by_gateway_payment_id(notification.object.id)
            return order.id if order is not None else None

    async def _settle(self, notification: YooKassaNotification) -> SettlementResult:
        payment = notification.object
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.webhook.received",
            event_type=notification.event,
            event_id=notification.event_id,
            gateway_payment_id=payment.id,
            payment_status=payment.status,
        )
        order_id = await asyncio.to_thread(self._resolve_order_id, notification)
        if not order_id:
            log_event(
                _LOGGER,
                logging.ERROR,
                "billing.webhook.order_unresolved",
                event_type=notification.event,
                gateway_payment_id=payment.id,
            )
            return SettlementResult("order_unresolved", detail=f"no order for payment {payment.id}")

        async with self._locks.hold(order_id):
            order = await asyncio.to_thread(self._load_order, order_id)
            if order is None:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "billing.webhook.order_not_found",
                    order_id=order_id,
                    gateway_payment_id=payment.id,
                )
                return SettlementResult("order_not_found", order_id=order_id)

            already_journaled = await asyncio.to_thread(self._is_journaled, notification)
            if already_journaled:
                log_event(_LOGGER, logging.INFO, "billing.webhook.duplicate", order_id=order_id, event=notification.event)
                return SettlementResult("duplicate_event", order_id=order_id)

            if notification.event == EVENT_PAYMENT_SUCCEEDED and payment.paid:
                return await self._settle_success(notification, order)
            if notification.event == EVENT_PAYMENT_CANCELED:
                return await asyncio.to_thread(self._settle_cancel, notification, order)

        log_event(
            _LOGGER,
            logging.INFO,
            "billing.webhook.ignored",
            order_id=order_id,
            event_type=notification.event,
            paid=payment.paid,
        )
        return SettlementResult("ignored", order_id=order_id, detail=f"event={notification.event}")

    def _load_order(self, order_id: str) -> Optional[_OrderSnapshot]:
        with session_scope(self._session_factory) as session:
            order = OrderRepository(session).find_by_id(order_id)
            return _OrderSnapshot.of(order) if order is not None else None

    def _is_journaled(self, notification: YooKassaNotification) -> bool:
        with session_scope(self._session_factory) as session:
            return OrderRepository(session).has_payment_event(
                event_id=notification.event_id,
                gateway_payment_id=notification.object.id,
                event=notification.event,
            )

    def _journal(self, repo: OrderRepository, notification: YooKassaNotification, order_id: str) -> None:
        repo.record_payment_event(
            gateway_payment_id=notification.object.id,
            event=notification.event,
            order_id=order_id,
            event_id=notification.event_id,
        )

    # ------------------------------------------------------------------
    # Success path
    # ------------------------------------------------------------------
    def _prepare_success(self, notification: YooKassaNotification, order: _OrderSnapshot) -> Optional[SettlementResult]:
        payment = notification.object
        with session_scope(self._session_factory) as session:
            repo = OrderRepository(session)
            if order.status == OrderStatus.PAID and order.credential:
                self._journal(repo, notification, order.id)
                return SettlementResult("already_settled", order_id=order.id)
            if order.status == OrderStatus.CANCELED:
                log_event(
                    _LOGGER,
                    logging.ERROR,
                    "billing.settlement.rejected_state",
                    order_id=order.id,
                    status=order.status,
                    gateway_payment_id=payment.id,
                )
                return SettlementResult("rejected_state", order_id=order.id, detail="order is canceled")
            if payment.amount is not None:
                try:
                    repo.attach_payment_intent(order.id, payment.id, payment.amount.value, payment.amount.currency)
                except OrderConflict as exc:
                    log_event(
                        _LOGGER,
                        logging.ERROR,
                        "billing.settlement.conflict",
                        order_id=order.id,
                        gateway_payment_id=payment.id,
                        error=str(exc),
                    )
                    return SettlementResult("conflict", order_id=order.id, detail=str(exc))
            elif order.gateway_payment_id and order.gateway_payment_id != payment.id:
                log_event(
                    _LOGGER,
                    logging.ERROR,
                    "billing.settlement.conflict",
                    order_id=order.id,
                    gateway_payment_id=payment.id,
                    attached_payment_id=order.gateway_payment_id,
                )
                return SettlementResult("conflict", order_id=order.id, detail="payment id mismatch")
        return None

    async def _provision(self, user_ref: str, order: _OrderSnapshot) -> ProvisionedCredential:
        if order.status == OrderStatus.PAID:
            # Paid earlier without a credential: the panel account already carries this
            # order's days, so read it back instead of extending again.
            existing = await self.provisioning.current_config(user_ref)
            if existing:
                account = await self.provisioning.get_status(user_ref)
                username = account.username if account is not None else user_ref
                return ProvisionedCredential(panel_username=username, value=existing)
        days = self.plans.duration_days(order.plan_id)
        return await self.provisioning.activate(user_ref, days)

    def _commit_paid(
        self,
        notification: YooKassaNotification,
        order: _OrderSnapshot,
        credential: ProvisionedCredential,
    ) -> _OrderSnapshot:
        with session_scope(self._session_factory) as session:
            repo = OrderRepository(session)
            paid = repo.mark_paid_with_credential(order.id, credential.value)
            if not paid.user_ref and notification.object.user_ref:
                paid.user_ref = notification.object.user_ref
            self._journal(repo, notification, order.id)
            return _OrderSnapshot.of(paid)

    def _warm_credential_store(self, user_ref: str, credential: ProvisionedCredential) -> None:
        with session_scope(self._session_factory) as session:
            store = VpnCredentialStore(session)
            active = store.get_active(user_ref)
            if (
                active is not None
                and active.credential_value == credential.value
                and active.panel_username == credential.panel_username
            ):
                return
            store.rotate(user_ref, credential.panel_username, credential.value)

    async def _settle_success(self, notification: YooKassaNotification, order: _OrderSnapshot) -> SettlementResult:
        payment = notification.object
        early = await asyncio.to_thread(self._prepare_success, notification, order)
        if early is not None:
            return early

        user_ref = order.user_ref or payment.user_ref
        if not user_ref:
            log_event(
                _LOGGER,
                logging.ERROR,
                "billing.settlement.user_unknown",
                order_id=order.id,
                gateway_payment_id=payment.id,
            )
            return SettlementResult("rejected_state", order_id=order.id, detail="order has no user reference")

        try:
            credential = await self._provision(user_ref, order)
        except ProvisioningError as exc:
            # Money received, service not delivered.
            log_event(
                _LOGGER,
                logging.CRITICAL,
                "billing.settlement.provisioning_failed",
                order_id=order.id,
                user_ref=user_ref,
                plan_id=order.plan_id,
                gateway_payment_id=payment.id,
                error=str(exc),
            )
            record_counter_metric(name="billing.settlement.provisioning_failed")
            if self.notifier is not None:
                await self.notifier.alert_operators(
                    "Payment received but VPN provisioning failed",
                    order_id=order.id,
                    user_ref=user_ref,
                    plan_id=order.plan_id,
                    error=str(exc),
                )
            return SettlementResult("provisioning_failed", order_id=order.id, detail=str(exc))

        repaired = order.status == OrderStatus.PAID
        try:
            settled = await asyncio.to_thread(self._commit_paid, notification, order, credential)
        except BillingStateError as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "billing.settlement.rejected_state",
                order_id=order.id,
                gateway_payment_id=payment.id,
                error=str(exc),
            )
            return SettlementResult("rejected_state", order_id=order.id, detail=str(exc))
        except SQLAlchemyError as exc:
            # The panel account exists but the order does not hold its credential.
            log_event(
                _LOGGER,
                logging.CRITICAL,
                "billing.settlement.commit_failed",
                order_id=order.id,
                user_ref=user_ref,
                plan_id=order.plan_id,
                gateway_payment_id=payment.id,
                panel_username=credential.panel_username,
                error=str(exc),
            )
            record_counter_metric(name="billing.settlement.commit_failed")
            if self.notifier is not None:
                await self.notifier.alert_operators(
                    "VPN provisioned but the order could not be saved",
                    order_id=order.id,
                    user_ref=user_ref,
                    panel_username=credential.panel_username,
                    error=str(exc),
                )
            return SettlementResult("commit_failed", order_id=order.id, detail=str(exc))

        log_event(
            _LOGGER,
            logging.INFO,
            "billing.settlement.paid",
            order_id=order.id,
            user_ref=user_ref,
            plan_id=order.plan_id,
            panel_username=credential.panel_username,
            repaired=repaired,
        )

        try:
            await asyncio.to_thread(self._warm_credential_store, user_ref, credential)
        except (BillingStateError, SQLAlchemyError) as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.settlement.credential_store_failed",
                order_id=order.id,
                user_ref=user_ref,
                error=str(exc),
            )

        if not repaired:
            await self._award_tickets(user_ref, settled)
            if self.notifier is not None:
                await self.notifier.notify_user(
                    user_ref,
                    "Payment received, your VPN subscription is active.\n" + credential.value,
                )
        return SettlementResult("repaired" if repaired else "settled", order_id=order.id)

    async def _award_tickets(self, user_ref: str, order: _OrderSnapshot) -> None:
        try:
            awarded = await asyncio.to_thread(self._award, user_ref, order.id, order.plan_id, order.created_at)
        except Exception as exc:  # noqa: BLE001
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.settlement.award_failed",
                order_id=order.id,
                user_ref=user_ref,
                error=str(exc),
            )
            self._enqueue_retry(user_ref, order.id, order.plan_id, order.created_at, error=str(exc))
            return
        log_event(_LOGGER, logging.DEBUG, "billing.settlement.award_done", order_id=order.id, awarded=awarded)

    # ------------------------------------------------------------------
    # Cancel path
    # ------------------------------------------------------------------
    def _settle_cancel(self, notification: YooKassaNotification, order: _OrderSnapshot) -> SettlementResult:
        payment = notification.object
        if order.gateway_payment_id and order.gateway_payment_id != payment.id:
            log_event(
                _LOGGER,
                logging.ERROR,
                "billing.settlement.conflict",
                order_id=order.id,
                event_type=notification.event,
                gateway_payment_id=payment.id,
                attached_payment_id=order.gateway_payment_id,
            )
            return SettlementResult("conflict", order_id=order.id, detail="payment id mismatch")
        try:
            with session_scope(self._session_factory) as session:
                repo = OrderRepository(session)
                repo.mark_canceled(order.id)
                self._journal(repo, notification, order.id)
        except BillingStateError as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "billing.settlement.rejected_state",
                order_id=order.id,
                event_type=notification.event,
                error=str(exc),
            )
            return SettlementResult("rejected_state", order_id=order.id, detail=str(exc))
        log_event(_LOGGER, logging.INFO, "billing.settlement.canceled", order_id=order.id)
        return SettlementResult("canceled", order_id=order.id)
