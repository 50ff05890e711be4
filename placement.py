"""
Order placement.

Placing an order is a short saga where only the first step can fail the
whole thing:

    1. order header        fatal       (nothing else runs without an order id)
    2. order items         best-effort
    3. default address     best-effort (only when the buyer asked for it)
    4. coupon usage        best-effort (only when a coupon is locked)
    5. payment dispatch    best-effort (the order stays pending, retry later)
    6. cart cleanup        best-effort

Each step reports a StepOutcome instead of raising, so the policy "continue
on anything but a header failure" lives in one place. Once the header is
written the session always reaches confirmation, unless the payment needs a
full-page redirect to the provider.

A header found by the session's idempotency key means an earlier attempt
wrote it and lost the reply; placement resumes on that order. Items are only
written when the order has none, and the coupon is counted once per order
(`coupon_redeemed` on the header).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from checkout import CheckoutSession, Stage
from config import settings
from database import now_utc
from errors import DispatchError, PersistenceError, PlacementInProgress, TransitionNotAllowed
from schemas import MarketingTouch, Order, OrderItem, PaymentAttempt, PriceBreakdown, SavedAddress
from payments import PaymentDispatchAdapter
from stores import CartStore, CouponStore, OrderStore, SavedAddressStore

logger = logging.getLogger(__name__)

BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

PAYMENT_RETRY_GUIDANCE = (
    "Your order was placed, but the payment could not be started. "
    "You can retry the payment from your order page."
)


def order_number(at: Optional[datetime] = None) -> str:
    millis = int((at or now_utc()).timestamp() * 1000)
    digits = ""
    while millis:
        millis, rem = divmod(millis, 36)
        digits = BASE36[rem] + digits
    return f"ORD-{digits or '0'}"


class StepStatus(str, Enum):
    SUCCESS = "success"
    NON_FATAL = "non_fatal"
    FATAL = "fatal"


@dataclass
class StepOutcome:
    step: str
    status: StepStatus
    detail: Optional[str] = None
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS


@dataclass
class PlacementResult:
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    outcomes: List[StepOutcome] = field(default_factory=list)
    payment: Optional[PaymentAttempt] = None
    payment_error: Optional[str] = None
    redirect_url: Optional[str] = None
    confirmed: bool = False
    duplicate: bool = False

    @property
    def placed(self) -> bool:
        return self.order_id is not None

    def outcome(self, step: str) -> Optional[StepOutcome]:
        return next((o for o in self.outcomes if o.step == step), None)


class OrderPlacementOrchestrator:
    def __init__(
        self,
        orders: OrderStore,
        addresses: SavedAddressStore,
        coupons: CouponStore,
        carts: CartStore,
        dispatcher: PaymentDispatchAdapter,
    ):
        self.orders = orders
        self.addresses = addresses
        self.coupons = coupons
        self.carts = carts
        self.dispatcher = dispatcher

    def place(self, session: CheckoutSession) -> PlacementResult:
        if not session.placing.acquire(blocking=False):
            raise PlacementInProgress(session.id)
        try:
            return self._place(session)
        finally:
            session.placing.release()

    def _run(self, step: str, order_id: Optional[str], fn: Callable[[], Any], fatal: bool = False) -> StepOutcome:
        try:
            return StepOutcome(step, StepStatus.SUCCESS, value=fn())
        except Exception as e:
            err = PersistenceError(step, str(e), e)
            if fatal:
                logger.error("Order placement aborted: %s", err)
                return StepOutcome(step, StepStatus.FATAL, detail=str(err))
            logger.warning("Order %s: %s, continuing", order_id, err)
            return StepOutcome(step, StepStatus.NON_FATAL, detail=str(err))

    def _check_ready(self, session: CheckoutSession):
        machine = session.state
        if machine.stage is not Stage.PAYMENT:
            raise TransitionNotAllowed(machine.stage.value, Stage.CONFIRMATION.value, "orders are placed from the payment stage")
        for stage in (Stage.IDENTIFICATION, Stage.ADDRESS, Stage.PAYMENT):
            if not machine.is_complete(stage):
                raise TransitionNotAllowed(machine.stage.value, Stage.CONFIRMATION.value, f"{stage.value} is incomplete")

    def _place(self, session: CheckoutSession) -> PlacementResult:
        if session.order_id and (session.state.locked or session.payment):
            # already placed in this session: confirmed, or handed off to the provider
            return PlacementResult(
                order_id=session.order_id,
                order_number=session.order_number,
                payment=session.payment,
                payment_error=session.payment_error,
                redirect_url=session.payment.checkout_url if session.payment and session.payment.redirect else None,
                confirmed=session.state.locked,
                duplicate=True,
            )
        self._check_ready(session)

        totals = session.totals
        number = order_number()
        result = PlacementResult(order_number=number)

        header = self._run("order_header", None, lambda: self._persist_header(session, number, totals), fatal=True)
        result.outcomes.append(header)
        if header.status is StepStatus.FATAL:
            return result
        order_id, number, existed = header.value
        result.order_id, result.order_number = order_id, number
        session.order_id, session.order_number = order_id, number
        if existed:
            logger.info("Session %s already placed order %s, resuming", session.id, order_id)
            result.duplicate = True
        result.outcomes.append(self._run("order_items", order_id, lambda: self._persist_items(session, order_id, existed)))
        if session.save_as_default:
            result.outcomes.append(self._run("saved_address", order_id, lambda: self._save_address(session)))
        if session.coupon is not None:
            result.outcomes.append(self._run("coupon_usage", order_id, lambda: self._redeem_coupon(order_id)))

        dispatch = self._dispatch(session, order_id)
        result.outcomes.append(dispatch)
        result.payment = session.payment = dispatch.value
        if not dispatch.ok:
            result.payment_error = session.payment_error = PAYMENT_RETRY_GUIDANCE

        result.outcomes.append(self._run("clear_cart", order_id, lambda: self.carts.clear(session.user_id)))
        if result.payment is not None and result.payment.redirect:
            result.redirect_url = result.payment.checkout_url
            logger.info("Order %s handed off to %s", order_id, result.payment.provider)
            return result

        session.state.confirm()
        result.confirmed = True
        logger.info("Order %s (%s) placed, total %.2f", number, order_id, totals.final_total)
        return result

    def _persist_header(self, session: CheckoutSession, number: str, totals: PriceBreakdown):
        existing = self.orders.find_by_idempotency_key(session.idempotency_key)
        if existing is not None:
            order = self.orders.get_order(existing)
            return existing, order.order_number if order else number, True

        touch = session.attribution.active_touch or MarketingTouch()
        quote = session.bound_quote
        order = Order(
            user_id=session.user_id,
            order_number=number,
            idempotency_key=session.idempotency_key,
            customer_name=session.customer.name,
            customer_email=session.customer.email,
            customer_phone=session.customer.phone,
            shipping_address=session.address,
            subtotal=totals.subtotal,
            coupon_discount=totals.coupon_discount,
            payment_method_discount=totals.payment_method_discount,
            discount=totals.discount,
            shipping_cost=totals.shipping_cost,
            total=totals.final_total,
            currency=settings.CURRENCY,
            shipping_method_name=quote.name if quote else None,
            shipping_service_code=quote.service_code if quote else None,
            shipping_provider=quote.company if quote else None,
            shipping_days=quote.delivery_max if quote else None,
            payment_method=session.payment_method,
            coupon_code=session.coupon.code if session.coupon else None,
            referral_code=session.referral.code if session.referral.verified else None,
            tracking_first_touch=session.attribution.first_touch,
            tracking_last_touch=session.attribution.last_touch,
            **touch.model_dump(),
        )
        return self.orders.insert_order(order), number, False

    def _persist_items(self, session: CheckoutSession, order_id: str, existed: bool = False) -> int:
        if existed:
            written = self.orders.list_items(order_id)
            if written:
                return len(written)
        items = [
            OrderItem(
                order_id=order_id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                product_name=line.product_name,
                variant_name=line.variant_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.extended_price,
                variants_detail=line.variants_detail,
            )
            for line in session.cart.lines
        ]
        self.orders.insert_items(items)
        return len(items)

    def _redeem_coupon(self, order_id: str) -> bool:
        """Count the order's coupon once, however many times placement resumes."""
        order = self.orders.get_order(order_id)
        if order is None or not order.coupon_code or order.coupon_redeemed:
            return False
        self.coupons.increment_usage(order.coupon_code)
        self.orders.mark_coupon_redeemed(order_id)
        return True

    def _save_address(self, session: CheckoutSession) -> str:
        # single default per customer: clear first, then set
        self.addresses.clear_default(session.user_id)
        fields = session.address.model_dump()
        if session.selected_address_id:
            self.addresses.update(session.selected_address_id, {**fields, "is_default": True})
            return session.selected_address_id
        return self.addresses.insert(SavedAddress(
            **fields,
            user_id=session.user_id,
            label="Casa",
            recipient_name=session.customer.name,
            phone=session.customer.phone,
            is_default=True,
        ))

    def _dispatch(self, session: CheckoutSession, order_id: str) -> StepOutcome:
        try:
            attempt = self.dispatcher.create_payment_intent(order_id, session.payment_method, session.customer)
        except DispatchError as e:
            logger.warning("Order %s: payment dispatch failed, order stays pending: %s", order_id, e)
            return StepOutcome("payment_dispatch", StepStatus.NON_FATAL, detail=str(e))
        except Exception as e:
            logger.exception("Order %s: unexpected payment dispatch error", order_id)
            return StepOutcome("payment_dispatch", StepStatus.NON_FATAL, detail=str(e))
        return StepOutcome("payment_dispatch", StepStatus.SUCCESS, value=attempt)
