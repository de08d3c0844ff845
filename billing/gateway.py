from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

import httpx

from config import (
    PAYMENT_PROVIDER,
    YOOKASSA_API_BASE_URL,
    YOOKASSA_RETURN_URL,
    YOOKASSA_SECRET_KEY,
    YOOKASSA_SHOP_ID,
    YOOKASSA_TIMEOUT_SECONDS,
)

GatewayName = Literal["mock", "yookassa"]


class PaymentGatewayError(RuntimeError):
    """Gateway unreachable, timed out or answered with something unusable. Retryable."""


@dataclass(frozen=True)
class PaymentIntent:
    """
    Normalized answer of the gateway to "create payment".

    `confirmation_url` is the hosted payment page the user is redirected to.
    """

    provider: GatewayName
    gateway_payment_id: str
    confirmation_url: str
    status: str
    amount_value: str
    amount_currency: str
    raw: Dict[str, Any] = field(default_factory=dict)


class BasePaymentGateway(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> GatewayName:
        raise NotImplementedError

    @abc.abstractmethod
    def create_payment_intent(
        self,
        *,
        order_id: str,
        plan_id: str,
        amount_value: str,
        currency: str,
        description: str,
        user_ref: Optional[str] = None,
        idempotence_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Create a payment on the gateway side and return where to send the user."""


class MockGateway(BasePaymentGateway):
    @property
    def name(self) -> GatewayName:
        return "mock"

    def create_payment_intent(
        self,
        *,
        order_id: str,
        plan_id: str,
        amount_value: str,
        currency: str,
        description: str,
        user_ref: Optional[str] = None,
        idempotence_key: Optional[str] = None,
    ) -> PaymentIntent:
        _ = (plan_id, description, user_ref, idempotence_key)
        # Development-only; never a real payment page.
        payment_id = f"mock_{order_id}"
        return PaymentIntent(
            provider="mock",
            gateway_payment_id=payment_id,
            confirmation_url=f"https://mock.invalid/pay/{payment_id}",
            status="pending",
            amount_value=amount_value,
            amount_currency=currency,
        )


class YooKassaGateway(BasePaymentGateway):
    def __init__(
        self,
        *,
        shop_id: str = YOOKASSA_SHOP_ID,
        secret_key: str = YOOKASSA_SECRET_KEY,
        base_url: str = YOOKASSA_API_BASE_URL,
        return_url: str = YOOKASSA_RETURN_URL,
        timeout_seconds: float = YOOKASSA_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.shop_id = shop_id
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.return_url = return_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def name(self) -> GatewayName:
        return "yookassa"

    def create_payment_intent(
        self,
        *,
        order_id: str,
        plan_id: str,
        amount_value: str,
        currency: str,
        description: str,
        user_ref: Optional[str] = None,
        idempotence_key: Optional[str] = None,
    ) -> PaymentIntent:
        if not self.shop_id or not self.secret_key:
            raise PaymentGatewayError("YOOKASSA_SHOP_ID/YOOKASSA_SECRET_KEY is missing")
        if not self.return_url:
            raise PaymentGatewayError("YOOKASSA_RETURN_URL is missing")

        metadata: Dict[str, Any] = {"orderId": order_id, "planId": plan_id}
        if user_ref:
            metadata["userRef"] = user_ref
        payload = {
            "amount": {"value": amount_value, "currency": currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": self.return_url},
            "description": description[:128],
            "metadata": metadata,
        }
        headers = {
            # The gateway deduplicates retries of the same create call on this key.
            "Idempotence-Key": idempotence_key or str(uuid.uuid4()),
            "Accept": "application/json",
        }
        try:
            with httpx.Client(
                auth=(self.shop_id, self.secret_key),
                timeout=self.timeout_seconds,
                transport=self._transport,
                trust_env=False,
            ) as client:
                resp = client.post(f"{self.base_url}/payments", json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json() if resp.content else {}
        except httpx.HTTPStatusError as exc:
            body = (exc.response.text or "")[:200]
            raise PaymentGatewayError(f"yookassa create payment failed: status={exc.response.status_code} body={body}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise PaymentGatewayError(f"yookassa create payment failed: {exc}") from exc

        if not isinstance(data, dict):
            raise PaymentGatewayError("yookassa returned a non-object response")
        payment_id = str(data.get("id") or "").strip()
        confirmation = data.get("confirmation") if isinstance(data.get("confirmation"), dict) else {}
        confirmation_url = str(confirmation.get("confirmation_url") or "").strip()
        if not payment_id or not confirmation_url:
            raise PaymentGatewayError(f"yookassa response is missing id or confirmation_url: {str(data)[:200]}")
        amount = data.get("amount") if isinstance(data.get("amount"), dict) else {}
        return PaymentIntent(
            provider="yookassa",
            gateway_payment_id=payment_id,
            confirmation_url=confirmation_url,
            status=str(data.get("status") or "pending"),
            amount_value=str(amount.get("value") or amount_value),
            amount_currency=str(amount.get("currency") or currency).upper(),
            raw=data,
        )


def get_payment_gateway(name: Optional[str] = None) -> BasePaymentGateway:
    """
    Gateway factory.

    If `name` is not provided, reads from config.PAYMENT_PROVIDER.
    """

    selected = (name or PAYMENT_PROVIDER or "yookassa").strip().lower()
    if selected == "mock":
        return MockGateway()
    return YooKassaGateway()
