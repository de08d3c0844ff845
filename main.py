from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import text

from app_services import AppServices, build_services, paid_orders_source
from auth import (
    AdminKey,
    AuthConfigError,
    AuthContext,
    AuthError,
    TelegramUser,
    is_admin_context,
    issue_access_token,
    resolve_auth_context,
    user_ref_for,
    verify_telegram_init_data,
)
from billing import (
    DuplicateOrder,
    Order,
    OrderConflict,
    OrderRepository,
    OrderStatus,
    PaymentGatewayError,
    VpnCredentialStore,
    WebhookForbidden,
    session_scope,
)
from config import (
    ADMIN_API_KEY,
    ADMIN_TELEGRAM_IDS,
    API_HOST,
    API_PORT,
    APP_VERSION,
    AUTH_TOKEN_SECRET,
    AUTH_TOKEN_TTL_SECONDS,
    CORS_ORIGINS,
    LOG_LEVEL,
    MARZBAN_PASSWORD,
    ROOT_PATH,
    STARTUP_BOOTSTRAP_ENABLED,
    TELEGRAM_BOT_TOKEN,
    TELEGRAM_BOT_USERNAME,
    TELEGRAM_INIT_DATA_MAX_AGE_SECONDS,
    TRIAL_PLAN_ID,
    YOOKASSA_SECRET_KEY,
    YOOKASSA_SHOP_ID,
)
from contest import TICKET_REASON_LABELS, ContestRepository, LedgerReason, build_ref_link
from errors import error_payload
from observability import configure_json_logging, get_logger, log_event
from runtime_metrics import get_runtime_metrics_snapshot, record_request_metric
from vpn import PanelNotFound, PanelUser, ProvisionedCredential, ProvisioningError

configure_json_logging(level=LOG_LEVEL)
APP_LOGGER = get_logger("subvpn.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services = build_services()
    if STARTUP_BOOTSTRAP_ENABLED:
        services.init_schema()
    services.start()
    app.state.services = services
    log_event(APP_LOGGER, logging.INFO, "app.started", version=APP_VERSION, api_host=API_HOST, api_port=API_PORT)
    try:
        yield
    finally:
        await services.aclose()


app = FastAPI(title="SubVPN Billing", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Admin-Key", "X-Telegram-Init-Data", "X-Trace-Id"],
    expose_headers=["X-Trace-Id"],
)


def _normalize_request_path(path: str) -> str:
    raw = str(path or "/")
    if raw.startswith("/v1/orders/") and raw.count("/") == 3 and not raw.endswith("/create"):
        return "/v1/orders/{order_id}"
    if raw.startswith("/v1/admin/orders/") and raw.endswith("/audit"):
        return "/v1/admin/orders/{order_id}/audit"
    return raw


def _request_user_id(request: Request) -> str:
    return str(getattr(request.state, "user_ref", "") or "anonymous")


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=_normalize_request_path(request.url.path),
        status_code=response.status_code,
        duration_ms=duration_ms,
        user_id=_request_user_id(request),
    )
    record_request_metric(status_code=response.status_code, duration_ms=duration_ms)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        user_id=_request_user_id(request),
        method=request.method,
        path=_normalize_request_path(request.url.path),
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def _api_error(status_code: int, code: str, detail: Optional[str] = None) -> HTTPException:
    return HTTPException(status_code=status_code, detail=error_payload(code, detail))


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_auth_context(request: Request) -> AuthContext:
    try:
        context = resolve_auth_context(
            authorization=request.headers.get("Authorization"),
            admin_key=request.headers.get("X-Admin-Key"),
            init_data=request.headers.get("X-Telegram-Init-Data"),
            token_secret=AUTH_TOKEN_SECRET,
            bot_token=TELEGRAM_BOT_TOKEN,
            admin_api_key=ADMIN_API_KEY,
            admin_ids=ADMIN_TELEGRAM_IDS,
            init_data_max_age_seconds=TELEGRAM_INIT_DATA_MAX_AGE_SECONDS,
        )
    except AuthError as exc:
        raise _api_error(401, "UNAUTHORIZED", str(exc)) from exc
    if isinstance(context, TelegramUser):
        request.state.user_ref = context.user_ref
    elif isinstance(context, AdminKey):
        request.state.user_ref = "admin-key"
    return context


def require_user(context: AuthContext = Depends(get_auth_context)) -> TelegramUser:
    if not isinstance(context, TelegramUser):
        raise _api_error(401, "UNAUTHORIZED")
    return context


def require_authenticated(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not isinstance(context, (TelegramUser, AdminKey)):
        raise _api_error(401, "UNAUTHORIZED")
    return context


def require_admin(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not isinstance(context, (TelegramUser, AdminKey)):
        raise _api_error(401, "UNAUTHORIZED")
    if not is_admin_context(context):
        raise _api_error(403, "FORBIDDEN")
    return context


# ----------------------------------------------------------------------
# Request / response models
# ----------------------------------------------------------------------
class TelegramAuthRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    init_data: str = Field(alias="initData", min_length=1)


class OrderCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    plan_id: str = Field(alias="planId", min_length=1, max_length=64)

    @field_validator("plan_id")
    @classmethod
    def _strip_plan(cls, value: str) -> str:
        return value.strip()


class OrderCreateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    status: str
    payment_url: str = Field(alias="paymentUrl")


class OrderStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    status: str
    plan_id: str = Field(alias="planId")
    amount: Optional[Dict[str, str]] = None
    credential: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    paid_at: Optional[str] = Field(default=None, alias="paidAt")


class RenewRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tg_id: int = Field(alias="tgId", gt=0)
    days: int = Field(gt=0, le=3650)


class ContestCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str = Field(min_length=1, max_length=180)
    starts_at: datetime = Field(alias="startsAt")
    ends_at: datetime = Field(alias="endsAt")
    attribution_window_days: int = Field(default=7, alias="attributionWindowDays", ge=0, le=365)
    rules_version: str = Field(default="v1", alias="rulesVersion", max_length=32)
    is_active: bool = Field(default=True, alias="isActive")


class ReferralBindRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    referrer_tg_id: int = Field(alias="referrerTgId", gt=0)
    referred_tg_id: int = Field(alias="referredTgId", gt=0)
    bound_at: Optional[datetime] = Field(default=None, alias="boundAt")


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _to_order_response(order: Order) -> OrderStatusResponse:
    paid = order.status == OrderStatus.PAID
    amount = None
    if order.amount_value and order.amount_currency:
        amount = {"value": order.amount_value, "currency": order.amount_currency}
    return OrderStatusResponse(
        order_id=order.id,
        status=order.status.value,
        plan_id=order.plan_id,
        amount=amount,
        credential=order.credential if paid else None,
        created_at=_iso(order.created_at),
        paid_at=_iso(order.paid_at) if paid else None,
    )


def _panel_status(account: PanelUser) -> Dict[str, Any]:
    now = int(time.time())
    running = account.status == "active" and (account.expire is None or account.expire > now)
    return {
        "status": "active" if running else "disabled",
        "panelStatus": account.status,
        "expiresAt": account.expire * 1000 if account.expire else None,
        "usedTraffic": account.used_traffic,
        "dataLimit": account.data_limit,
    }


def _warm_store(services: AppServices, user_ref: str, credential: ProvisionedCredential) -> None:
    with session_scope(services.billing_sessions) as session:
        store = VpnCredentialStore(session)
        active = store.get_active(user_ref)
        if active is not None and active.credential_value == credential.value:
            return
        store.rotate(user_ref, credential.panel_username, credential.value)


# ----------------------------------------------------------------------
# Health and metrics
# ----------------------------------------------------------------------
def _ping(engine) -> Optional[str]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        return str(exc)
    return None


@app.get("/health")
async def health(request: Request) -> dict:
    services = get_services(request)
    report: Dict[str, Any] = {
        "status": "ok",
        "db": "ok",
        "contest_db": "ok",
        "config": "ok",
        "version": app.version,
        "details": {},
    }
    db_error = await asyncio.to_thread(_ping, services.billing_engine)
    if db_error:
        report["db"] = "error"
        report["details"]["db"] = db_error
        report["status"] = "degraded"
    if services.contest_engine is not services.billing_engine:
        contest_error = await asyncio.to_thread(_ping, services.contest_engine)
        if contest_error:
            report["contest_db"] = "error"
            report["details"]["contest_db"] = contest_error
            report["status"] = "degraded"
    missing = [
        name
        for name, value in (
            ("YOOKASSA_SHOP_ID", YOOKASSA_SHOP_ID),
            ("YOOKASSA_SECRET_KEY", YOOKASSA_SECRET_KEY),
            ("MARZBAN_PASSWORD", MARZBAN_PASSWORD),
            ("TELEGRAM_BOT_TOKEN", TELEGRAM_BOT_TOKEN),
            ("AUTH_TOKEN_SECRET", AUTH_TOKEN_SECRET),
        )
        if not value
    ]
    if missing:
        report["config"] = "incomplete"
        report["details"]["missing_config"] = missing
    report["details"]["award_retry"] = services.retry_scheduler.stats()
    return report


@app.get("/metrics/runtime")
async def runtime_metrics(request: Request, _: AuthContext = Depends(require_admin)) -> dict:
    snapshot = get_runtime_metrics_snapshot()
    snapshot["award_retry"] = get_services(request).retry_scheduler.stats()
    return snapshot


# ----------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------
@app.post("/v1/auth/telegram")
async def auth_telegram(payload: TelegramAuthRequest) -> dict:
    try:
        user = verify_telegram_init_data(
            payload.init_data,
            TELEGRAM_BOT_TOKEN,
            max_age_seconds=TELEGRAM_INIT_DATA_MAX_AGE_SECONDS,
            admin_ids=ADMIN_TELEGRAM_IDS,
        )
        token = issue_access_token(user, AUTH_TOKEN_SECRET, AUTH_TOKEN_TTL_SECONDS)
    except AuthConfigError as exc:
        log_event(APP_LOGGER, logging.ERROR, "auth.telegram.misconfigured", error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except AuthError as exc:
        log_event(APP_LOGGER, logging.WARNING, "auth.telegram.rejected", error=str(exc))
        raise _api_error(401, "UNAUTHORIZED", str(exc)) from exc
    log_event(APP_LOGGER, logging.INFO, "auth.telegram.login", user_ref=user.user_ref, is_admin=user.is_admin)
    return {
        "accessToken": token,
        "tokenType": "bearer",
        "expiresIn": AUTH_TOKEN_TTL_SECONDS,
        "user": {
            "id": user.id,
            "username": user.username,
            "firstName": user.first_name,
            "isAdmin": user.is_admin,
        },
    }


# ----------------------------------------------------------------------
# Tariffs and orders
# ----------------------------------------------------------------------
@app.get("/v1/tariffs")
async def list_tariffs(
    services: AppServices = Depends(get_services),
    context: AuthContext = Depends(get_auth_context),
) -> dict:
    include_trial = True
    if isinstance(context, TelegramUser):
        with session_scope(services.billing_sessions) as session:
            include_trial = not OrderRepository(session).has_completed_payment(context.user_ref)
    return {
        "tariffs": [
            {
                "id": plan.id,
                "name": plan.name,
                "days": plan.days,
                "price": {"value": plan.price_value, "currency": plan.currency},
                "trial": plan.trial,
            }
            for plan in services.plans.list(include_trial=include_trial)
        ]
    }


@app.post("/v1/orders/create", response_model=OrderCreateResponse, status_code=201)
async def create_order(
    payload: OrderCreateRequest,
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> OrderCreateResponse:
    plan = services.plans.get(payload.plan_id)
    if plan is None:
        raise _api_error(404, "PLAN_NOT_FOUND", payload.plan_id)

    order_id = f"ord_{uuid.uuid4().hex}"
    # Order row first, gateway call outside the session.
    with session_scope(services.billing_sessions) as session:
        repo = OrderRepository(session)
        if plan.trial or plan.id == TRIAL_PLAN_ID:
            if repo.has_completed_payment(user.user_ref):
                raise _api_error(409, "TRIAL_UNAVAILABLE")
        try:
            repo.create_pending(order_id, plan.id, user.user_ref)
        except DuplicateOrder as exc:
            raise _api_error(409, "ORDER_EXISTS", str(exc)) from exc

    try:
        intent = await asyncio.to_thread(
            services.gateway.create_payment_intent,
            order_id=order_id,
            plan_id=plan.id,
            amount_value=plan.price_value,
            currency=plan.currency,
            description=f"{plan.name} ({plan.days} days)",
            user_ref=user.user_ref,
            idempotence_key=order_id,
        )
    except PaymentGatewayError as exc:
        log_event(
            APP_LOGGER,
            logging.WARNING,
            "billing.order.gateway_failed",
            order_id=order_id,
            plan_id=plan.id,
            user_ref=user.user_ref,
            error=str(exc),
        )
        raise _api_error(502, "PAYMENT_GATEWAY_ERROR", str(exc)) from exc

    with session_scope(services.billing_sessions) as session:
        try:
            OrderRepository(session).attach_payment_intent(
                order_id,
                intent.gateway_payment_id,
                intent.amount_value,
                intent.amount_currency,
            )
        except OrderConflict as exc:
            log_event(APP_LOGGER, logging.ERROR, "billing.order.attach_conflict", order_id=order_id, error=str(exc))
            raise _api_error(409, "ORDER_EXISTS", str(exc)) from exc

    log_event(
        APP_LOGGER,
        logging.INFO,
        "billing.order.created",
        order_id=order_id,
        plan_id=plan.id,
        user_ref=user.user_ref,
        gateway_payment_id=intent.gateway_payment_id,
    )
    return OrderCreateResponse(order_id=order_id, status=OrderStatus.PENDING.value, payment_url=intent.confirmation_url)


@app.get("/v1/orders/{order_id}", response_model=OrderStatusResponse, response_model_exclude_none=True)
async def get_order(
    order_id: str,
    services: AppServices = Depends(get_services),
    context: AuthContext = Depends(require_authenticated),
) -> OrderStatusResponse:
    with session_scope(services.billing_sessions) as session:
        order = OrderRepository(session).find_by_id(order_id)
        if order is None:
            raise _api_error(404, "ORDER_NOT_FOUND")
        if isinstance(context, TelegramUser) and not context.is_admin and order.user_ref != context.user_ref:
            raise _api_error(404, "ORDER_NOT_FOUND")
        return _to_order_response(order)


@app.get("/v1/orders", response_model=List[OrderStatusResponse], response_model_exclude_none=True)
async def list_my_orders(
    limit: int = Query(50, ge=1, le=200),
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> List[OrderStatusResponse]:
    with session_scope(services.billing_sessions) as session:
        return [_to_order_response(order) for order in OrderRepository(session).find_by_user_ref(user.user_ref, limit)]


@app.post("/v1/payments/webhook")
async def payment_webhook(request: Request, services: AppServices = Depends(get_services)) -> JSONResponse:
    raw = await request.body()
    raw_text = raw.decode("utf-8", errors="replace")
    try:
        payload: Any = json.loads(raw_text) if raw_text.strip() else None
    except ValueError:
        payload = None
    forwarded = str(request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    source_ip = forwarded or (request.client.host if request.client else None)
    try:
        result = await services.pipeline.handle(payload, source_ip=source_ip, raw_payload=raw_text)
    except WebhookForbidden:
        return JSONResponse(status_code=403, content={"ok": False})
    log_event(
        APP_LOGGER,
        logging.INFO,
        "billing.webhook.acknowledged",
        outcome=result.outcome,
        order_id=result.order_id,
    )
    return JSONResponse(status_code=200, content={"ok": True})


@app.get("/v1/admin/orders/{order_id}/audit")
async def order_audit_logs(
    order_id: str,
    limit: int = Query(50, ge=1, le=200),
    services: AppServices = Depends(get_services),
    _: AuthContext = Depends(require_admin),
) -> list:
    with session_scope(services.billing_sessions) as session:
        return [
            {
                "id": log.id,
                "occurredAt": _iso(log.occurred_at),
                "eventType": log.event_type,
                "eventId": log.external_event_id,
                "gatewayPaymentId": log.gateway_payment_id,
                "sourceIp": log.source_ip,
                "outcome": log.outcome,
                "detail": log.detail,
            }
            for log in OrderRepository(session).list_audit_logs(order_id=order_id, limit=limit)
        ]


# ----------------------------------------------------------------------
# VPN account
# ----------------------------------------------------------------------
@app.get("/v1/user/config")
async def user_config(
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> dict:
    with session_scope(services.billing_sessions) as session:
        active = VpnCredentialStore(session).get_active(user.user_ref)
        if active is not None:
            return {"config": active.credential_value, "source": "store"}
        last_paid = OrderRepository(session).last_paid_credential(user.user_ref)
    if last_paid:
        return {"config": last_paid, "source": "order"}
    try:
        value = await services.provisioning.current_config(user.user_ref)
    except ProvisioningError as exc:
        raise _api_error(503, "PANEL_UNAVAILABLE", str(exc)) from exc
    if not value:
        raise _api_error(404, "SUBSCRIPTION_NOT_FOUND")
    return {"config": value, "source": "panel"}


async def _require_account(services: AppServices, user_ref: str) -> PanelUser:
    try:
        account = await services.provisioning.get_status(user_ref)
    except ProvisioningError as exc:
        raise _api_error(503, "PANEL_UNAVAILABLE", str(exc)) from exc
    if account is None:
        raise _api_error(404, "SUBSCRIPTION_NOT_FOUND")
    return account


@app.get("/v1/user/status")
async def user_status(
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> dict:
    account = await _require_account(services, user.user_ref)
    return _panel_status(account)


@app.get("/v1/user/billing")
async def user_billing(
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> dict:
    account = await _require_account(services, user.user_ref)
    report = _panel_status(account)
    now = int(time.time())
    seconds_left = max(0, (account.expire or now) - now)
    days_left = seconds_left // 86400
    remaining = max(0, account.data_limit - account.used_traffic) if account.data_limit else None
    report.update(
        {
            "daysLeft": days_left,
            "remainingTraffic": remaining,
            "averagePerDay": (remaining // days_left) if remaining is not None and days_left > 0 else None,
        }
    )
    return report


@app.post("/v1/user/regenerate")
async def user_regenerate(
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> dict:
    try:
        credential = await services.provisioning.rotate_credential(user.user_ref)
    except PanelNotFound as exc:
        raise _api_error(404, "SUBSCRIPTION_NOT_FOUND") from exc
    except ProvisioningError as exc:
        raise _api_error(503, "PANEL_UNAVAILABLE", str(exc)) from exc
    with session_scope(services.billing_sessions) as session:
        VpnCredentialStore(session).rotate(user.user_ref, credential.panel_username, credential.value)
    log_event(APP_LOGGER, logging.INFO, "vpn.credential.regenerated", user_ref=user.user_ref)
    return {"config": credential.value}


@app.post("/v1/user/renew")
async def user_renew(
    payload: RenewRequest,
    services: AppServices = Depends(get_services),
    _: AuthContext = Depends(require_admin),
) -> dict:
    user_ref = user_ref_for(payload.tg_id)
    try:
        credential = await services.provisioning.renew(user_ref, payload.days)
    except ProvisioningError as exc:
        raise _api_error(503, "PANEL_UNAVAILABLE", str(exc)) from exc
    await asyncio.to_thread(_warm_store, services, user_ref, credential)
    log_event(APP_LOGGER, logging.INFO, "vpn.account.renewed_by_admin", user_ref=user_ref, days=payload.days)
    return {"ok": True, "userRef": user_ref, "config": credential.value}


# ----------------------------------------------------------------------
# Contest
# ----------------------------------------------------------------------
def _contest_payload(contest) -> Dict[str, Any]:
    return {
        "id": contest.id,
        "title": contest.title,
        "startsAt": _iso(contest.starts_at),
        "endsAt": _iso(contest.ends_at),
        "attributionWindowDays": contest.attribution_window_days,
        "rulesVersion": contest.rules_version,
        "isActive": contest.is_active,
    }


def _resolve_contest(repo: ContestRepository, contest_id: Optional[str]):
    contest = repo.get_contest(contest_id) if contest_id else repo.get_active_contest(datetime.now(timezone.utc))
    if contest is None:
        raise _api_error(404, "CONTEST_NOT_FOUND")
    return contest


@app.get("/v1/contest/active")
async def contest_active(services: AppServices = Depends(get_services)) -> dict:
    with session_scope(services.contest_sessions) as session:
        contest = _resolve_contest(ContestRepository(session), None)
        return _contest_payload(contest)


@app.get("/v1/contest/summary")
async def contest_summary(
    contest_id: Optional[str] = Query(None),
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> dict:
    with session_scope(services.contest_sessions) as session:
        repo = ContestRepository(session)
        contest = _resolve_contest(repo, contest_id)
        summary = repo.referral_summary(user.user_ref, contest.id)
        contest_data = _contest_payload(contest)
    return {
        "contest": contest_data,
        "refLink": build_ref_link(TELEGRAM_BOT_USERNAME, user.id),
        "ticketsTotal": summary["tickets_total"],
        "invitedTotal": summary["invited_total"],
        "qualifiedTotal": summary["qualified_total"],
        "pendingTotal": summary["pending_total"],
        "rank": summary["rank"],
        "totalParticipants": summary["total_participants"],
    }


@app.get("/v1/contest/friends")
async def contest_friends(
    contest_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> list:
    with session_scope(services.contest_sessions) as session:
        repo = ContestRepository(session)
        contest = _resolve_contest(repo, contest_id)
        return [
            {
                "id": item["id"],
                "referredId": item["referred_id"],
                "status": item["status"],
                "statusReason": item["status_reason"],
                "ticketsFromFriendTotal": item["tickets_from_friend_total"],
                "boundAt": item["bound_at"],
            }
            for item in repo.referral_friends(user.user_ref, contest.id, limit)
        ]


@app.get("/v1/contest/tickets")
async def contest_tickets(
    contest_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    services: AppServices = Depends(get_services),
    user: TelegramUser = Depends(require_user),
) -> list:
    with session_scope(services.contest_sessions) as session:
        repo = ContestRepository(session)
        contest = _resolve_contest(repo, contest_id)
        return [
            {
                "id": entry.id,
                "delta": entry.delta,
                "reason": entry.reason.value,
                "label": TICKET_REASON_LABELS.get(entry.reason, entry.reason.value),
                "orderId": entry.order_id,
                "inviteeId": entry.referred_id if entry.reason == LedgerReason.INVITEE_PAYMENT else None,
                "createdAt": _iso(entry.created_at),
            }
            for entry in repo.ticket_history(user.user_ref, contest.id, limit)
        ]


@app.get("/v1/admin/contest/participants")
async def contest_participants(
    contest_id: Optional[str] = Query(None),
    services: AppServices = Depends(get_services),
    _: AuthContext = Depends(require_admin),
) -> dict:
    with session_scope(services.contest_sessions) as session:
        repo = ContestRepository(session)
        contest = _resolve_contest(repo, contest_id)
        return {
            "contest": _contest_payload(contest),
            "participants": [
                {
                    "rank": item["rank"],
                    "userRef": item["user_ref"],
                    "ticketsTotal": item["tickets_total"],
                    "ordersTotal": item["orders_total"],
                }
                for item in repo.contest_participants(contest.id)
            ],
        }


@app.post("/v1/admin/contests", status_code=201)
async def create_contest(
    payload: ContestCreateRequest,
    services: AppServices = Depends(get_services),
    _: AuthContext = Depends(require_admin),
) -> dict:
    with session_scope(services.contest_sessions) as session:
        try:
            contest = ContestRepository(session).create_contest(
                title=payload.title,
                starts_at=payload.starts_at,
                ends_at=payload.ends_at,
                attribution_window_days=payload.attribution_window_days,
                rules_version=payload.rules_version,
                is_active=payload.is_active,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        log_event(APP_LOGGER, logging.INFO, "contest.created", contest_id=contest.id, title=contest.title)
        return _contest_payload(contest)


@app.post("/v1/admin/referrals/bind")
async def bind_referral(
    payload: ReferralBindRequest,
    services: AppServices = Depends(get_services),
    _: AuthContext = Depends(require_admin),
) -> dict:
    referrer = user_ref_for(payload.referrer_tg_id)
    referred = user_ref_for(payload.referred_tg_id)
    with session_scope(services.contest_sessions) as session:
        repo = ContestRepository(session)
        created = repo.get_referral_binding(referred) is None
        binding = repo.bind_referral(referrer_id=referrer, referred_id=referred, bound_at=payload.bound_at)
        result = {
            "referrerId": binding.referrer_id,
            "referredId": binding.referred_id,
            "boundAt": _iso(binding.bound_at),
            "created": created,
        }
    log_event(APP_LOGGER, logging.INFO, "contest.referral.bound", referrer_id=referrer, referred_id=referred)
    return result


@app.post("/v1/admin/contest/award-missing")
async def award_missing(
    services: AppServices = Depends(get_services),
    _: AuthContext = Depends(require_admin),
) -> dict:
    recovered = await asyncio.to_thread(services.awards.award_missing, paid_orders_source(services))
    return {"recovered": recovered}
