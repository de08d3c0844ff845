from .credentials import VpnCredentialStore
from .db import (
    SessionFactory,
    build_session_factory,
    init_billing_db,
    session_scope,
)
from .gateway import (
    BasePaymentGateway,
    MockGateway,
    PaymentGatewayError,
    PaymentIntent,
    YooKassaGateway,
    get_payment_gateway,
)
from .models import (
    Base,
    BillingAuditLog,
    Order,
    OrderStatus,
    PaymentEvent,
    VpnCredential,
)
from .notifications import TelegramNotifier
from .plans import DEFAULT_PLANS, Plan, PlanCatalog, load_plan_catalog
from .repository import (
    BillingStateError,
    DuplicateOrder,
    InvalidCredential,
    InvalidState,
    OrderConflict,
    OrderNotFound,
    OrderRepository,
)
from .service import (
    SettlementPipeline,
    SettlementResult,
    WebhookForbidden,
    YooKassaNotification,
    is_source_ip_allowed,
    parse_allowed_networks,
)

__all__ = [
    "Base",
    "Order",
    "OrderStatus",
    "PaymentEvent",
    "VpnCredential",
    "BillingAuditLog",
    "SessionFactory",
    "build_session_factory",
    "init_billing_db",
    "session_scope",
    "OrderRepository",
    "BillingStateError",
    "OrderNotFound",
    "DuplicateOrder",
    "OrderConflict",
    "InvalidState",
    "InvalidCredential",
    "VpnCredentialStore",
    "Plan",
    "PlanCatalog",
    "DEFAULT_PLANS",
    "load_plan_catalog",
    "BasePaymentGateway",
    "MockGateway",
    "YooKassaGateway",
    "PaymentGatewayError",
    "PaymentIntent",
    "get_payment_gateway",
    "TelegramNotifier",
    "SettlementPipeline",
    "SettlementResult",
    "WebhookForbidden",
    "YooKassaNotification",
    "parse_allowed_networks",
    "is_source_ip_allowed",
]
