"""
Payment dispatch.

The adapter asks the configured gateway for a payment intent on an order that
already exists, records the attempt and returns it. Every failure, including
a gateway that does not answer within PAYMENT_TIMEOUT_SECONDS, surfaces as a
DispatchError; the order itself is untouched and the call can be repeated
against the same order id.
"""
from __future__ import annotations

import logging
import random
import string
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import stripe
from pydantic import BaseModel

from config import settings
from database import now_utc
from errors import DispatchError
from schemas import CustomerIdentity, Order, PaymentAttempt, PaymentMethod
from stores import OrderStore, PaymentAttemptStore

logger = logging.getLogger(__name__)


def random_reference(prefix: str, k: int = 14) -> str:
    return prefix + "".join(random.choices(string.ascii_letters + string.digits, k=k))


class GatewayResult(BaseModel):
    reference: str
    qr_code: Optional[str] = None
    qr_code_image_url: Optional[str] = None
    boleto_url: Optional[str] = None
    checkout_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    redirect: bool = False


class PaymentGateway(Protocol):
    name: str

    def create_intent(self, order_id: str, order: Order, method: PaymentMethod, customer: CustomerIdentity) -> GatewayResult: ...


class MockGateway:
    """Offline provider used in development and demos; nothing leaves the process."""

    name = "mock"

    def __init__(self, base_url: str = settings.FRONTEND_URL):
        self.base_url = base_url.rstrip("/")

    def create_intent(self, order_id: str, order: Order, method: PaymentMethod, customer: CustomerIdentity) -> GatewayResult:
        reference = random_reference("pay_")
        if method == "instant_transfer":
            payload = f"00020126{len(reference):02d}{reference}5204000053039865406{order.total:.2f}5802BR6304"
            return GatewayResult(
                reference=reference,
                qr_code=payload,
                expires_at=now_utc() + timedelta(minutes=settings.PIX_EXPIRATION_MINUTES),
            )
        if method == "deferred_voucher":
            return GatewayResult(
                reference=reference,
                boleto_url=f"{self.base_url}/boleto/{reference}.pdf",
                expires_at=now_utc() + timedelta(days=settings.BOLETO_DUE_DAYS),
            )
        return GatewayResult(reference=reference, checkout_url=f"{self.base_url}/pay/{reference}")


class StripeGateway:
    """Stripe Checkout. Card payments hand the buyer over to Stripe's hosted page."""

    name = "stripe"

    METHOD_TYPES = {"instant_transfer": "pix", "deferred_voucher": "boleto", "card": "card"}

    def __init__(self, api_key: str, frontend_url: str = settings.FRONTEND_URL, currency: str = settings.CURRENCY):
        self.api_key = api_key
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency.lower()

    def create_intent(self, order_id: str, order: Order, method: PaymentMethod, customer: CustomerIdentity) -> GatewayResult:
        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            mode="payment",
            payment_method_types=[self.METHOD_TYPES[method]],
            line_items=[{
                "price_data": {
                    "currency": self.currency,
                    "product_data": {"name": f"Pedido {order.order_number}"},
                    # Stripe expects amount in smallest unit (centavos)
                    "unit_amount": int(round(order.total * 100)),
                },
                "quantity": 1,
            }],
            customer_email=customer.email,
            client_reference_id=order_id,
            metadata={"order_id": order_id, "order_number": order.order_number},
            success_url=f"{self.frontend_url}/checkout/success?order={order_id}",
            cancel_url=f"{self.frontend_url}/checkout/cancel?order={order_id}",
        )
        expires_at = datetime.fromtimestamp(session.expires_at, tz=timezone.utc) if session.expires_at else None
        return GatewayResult(
            reference=session.id,
            checkout_url=session.url,
            expires_at=expires_at,
            redirect=method == "card",
        )


def gateway_from_settings() -> PaymentGateway:
    if settings.PAYMENT_PROVIDER == "stripe" and settings.STRIPE_SECRET_KEY:
        return StripeGateway(settings.STRIPE_SECRET_KEY)
    return MockGateway()


class PaymentDispatchAdapter:
    def __init__(
        self,
        gateway: PaymentGateway,
        orders: OrderStore,
        attempts: PaymentAttemptStore,
        timeout: float = settings.PAYMENT_TIMEOUT_SECONDS,
    ):
        self.gateway = gateway
        self.orders = orders
        self.attempts = attempts
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="payment-dispatch")

    def create_payment_intent(
        self, order_id: str, method: Optional[PaymentMethod], customer: CustomerIdentity
    ) -> PaymentAttempt:
        """Start a payment for an existing order. The method is fixed by the order's price breakdown."""
        order = self.orders.get_order(order_id)
        if order is None:
            raise DispatchError(f"Order {order_id} not found", self.gateway.name, retryable=False)
        if order.status != "pending":
            raise DispatchError(f"Order {order.order_number} is already {order.status}", self.gateway.name, retryable=False)
        if method is not None and method != order.payment_method:
            raise DispatchError(
                f"Order {order.order_number} was priced for {order.payment_method}, not {method}",
                self.gateway.name,
                retryable=False,
            )
        method = order.payment_method

        future = self._executor.submit(self.gateway.create_intent, order_id, order, method, customer)
        try:
            result = future.result(timeout=self.timeout)
        except FutureTimeout:
            if not future.cancel():
                future.add_done_callback(lambda f: self._log_late_result(order_id, f))
            raise DispatchError(f"{self.gateway.name} did not answer within {self.timeout:g}s", self.gateway.name)
        except Exception as e:
            raise DispatchError(f"{self.gateway.name} rejected the payment: {e}", self.gateway.name) from e

        attempt = PaymentAttempt(
            order_id=order_id,
            provider=self.gateway.name,
            method=method,
            reference=result.reference,
            amount=order.total,
            currency=order.currency,
            qr_code=result.qr_code,
            qr_code_image_url=result.qr_code_image_url,
            boleto_url=result.boleto_url,
            checkout_url=result.checkout_url,
            expires_at=result.expires_at,
            redirect=result.redirect,
        )
        try:
            self.attempts.insert(attempt)
            self.orders.update_payment(order_id, {
                "payment_provider": self.gateway.name,
                "payment_reference": result.reference,
                "payment_status": "pending",
            })
        except Exception as e:
            logger.warning("Payment attempt %s for order %s could not be recorded: %s", result.reference, order_id, e)
        logger.info("Payment attempt %s created for order %s via %s", result.reference, order_id, self.gateway.name)
        return attempt

    def _log_late_result(self, order_id: str, future) -> None:
        # the gateway call outlived the timeout; nothing records this intent
        if future.cancelled() or future.exception() is not None:
            return
        logger.warning(
            "%s answered late for order %s with unrecorded intent %s",
            self.gateway.name, order_id, future.result().reference,
        )
