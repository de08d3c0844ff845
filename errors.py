from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "PLAN_NOT_FOUND": {
        "message": "Unknown plan",
        "hint": "Pick a plan from GET /v1/tariffs.",
    },
    "TRIAL_UNAVAILABLE": {
        "message": "The trial plan is only available before the first paid order",
        "hint": "Choose a paid plan.",
    },
    "ORDER_NOT_FOUND": {
        "message": "Order not found",
        "hint": "Check the orderId returned by POST /v1/orders/create.",
    },
    "ORDER_EXISTS": {
        "message": "Order already exists",
        "hint": "Retry the request; a fresh orderId is generated each time.",
    },
    "PAYMENT_GATEWAY_ERROR": {
        "message": "Payment provider is unavailable",
        "hint": "Retry in a minute; the order stays pending.",
    },
    "PANEL_UNAVAILABLE": {
        "message": "VPN panel is unavailable",
        "hint": "Retry later.",
    },
    "SUBSCRIPTION_NOT_FOUND": {
        "message": "No active subscription",
        "hint": "Buy a plan first.",
    },
    "CONTEST_NOT_FOUND": {
        "message": "Contest not found",
        "hint": "There is no active contest right now.",
    },
    "UNAUTHORIZED": {
        "message": "Authentication required",
        "hint": "Sign in through the Telegram WebApp.",
    },
    "FORBIDDEN": {
        "message": "Admin access required",
        "hint": "Use an admin account or the admin API key.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)


def error_payload(code: str, detail: str | None = None) -> Dict[str, str]:
    entry = ERROR_CODE_MAP.get(code) or {"message": code, "hint": ""}
    payload = {"error_code": code, "message": entry["message"], "hint": entry["hint"]}
    if detail:
        payload["detail"] = detail
    return payload
