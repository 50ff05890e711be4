"""
Checkout session and stage machine.

A CheckoutSession is the explicit context every checkout component works on:
it is created from the buyer's cart when checkout starts and discarded once
the order is confirmed or the buyer abandons it. Stages move linearly:

    identification -> address -> payment -> confirmation

Going forward requires the current stage to be complete, going back never
clears anything, and confirmation is only entered by order placement.
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from config import settings
from database import now_utc
from coupons import CouponApplied
from errors import CheckoutValidationError, SessionNotFound, TransitionNotAllowed
from pricing import PricingEngine, snapshot_cart
from referral import ReferralVerifier
from schemas import (
    PAYMENT_METHODS,
    CartSnapshot,
    CustomerIdentity,
    DeliveryAddress,
    MarketingAttribution,
    PaymentAttempt,
    PaymentMethod,
    PriceBreakdown,
    ReferralAttribution,
    SavedAddress,
    ShippingQuote,
)
from shipping import BoundShippingQuote, ShippingQuoteBinder
from stores import CartStore, CatalogStore, SavedAddressStore

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    IDENTIFICATION = "identification"
    ADDRESS = "address"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


STAGES: List[Stage] = list(Stage)


class CheckoutStateMachine:
    def __init__(self, session: "CheckoutSession"):
        self.session = session
        self.stage = Stage.IDENTIFICATION
        self.furthest = 0
        self.locked = False
        self.totals: Optional[PriceBreakdown] = None

    @property
    def index(self) -> int:
        return STAGES.index(self.stage)

    def is_complete(self, stage: Stage) -> bool:
        s = self.session
        if stage is Stage.IDENTIFICATION:
            return s.customer.is_complete()
        if stage is Stage.ADDRESS:
            return s.address.is_complete() and ShippingQuoteBinder.is_bound(s)
        if stage is Stage.PAYMENT:
            return s.payment_method is not None
        return self.locked

    def _enter(self, stage: Stage) -> Stage:
        self.stage = stage
        self.furthest = max(self.furthest, self.index)
        self.totals = self.session.totals
        logger.debug("Session %s entered %s (total %.2f)", self.session.id, stage.value, self.totals.final_total)
        return stage

    def next(self) -> Stage:
        if self.locked:
            raise TransitionNotAllowed(self.stage.value, "next", "checkout is already confirmed")
        if self.stage is Stage.PAYMENT:
            raise TransitionNotAllowed(self.stage.value, Stage.CONFIRMATION.value, "place the order to confirm")
        target = STAGES[self.index + 1]
        if not self.is_complete(self.stage):
            raise TransitionNotAllowed(self.stage.value, target.value, f"{self.stage.value} is incomplete")
        return self._enter(target)

    def back(self) -> Stage:
        if self.locked:
            raise TransitionNotAllowed(self.stage.value, "back", "checkout is already confirmed")
        if self.index == 0:
            raise TransitionNotAllowed(self.stage.value, "back", "already at the first stage")
        return self._enter(STAGES[self.index - 1])

    def go_to(self, stage: Stage) -> Stage:
        if self.locked:
            raise TransitionNotAllowed(self.stage.value, stage.value, "checkout is already confirmed")
        target = STAGES.index(stage)
        if stage is Stage.CONFIRMATION:
            raise TransitionNotAllowed(self.stage.value, stage.value, "place the order to confirm")
        if target > self.furthest:
            raise TransitionNotAllowed(self.stage.value, stage.value, "stage not reached yet")
        if target <= self.index:
            return self._enter(stage)
        for earlier in STAGES[:target]:
            if not self.is_complete(earlier):
                raise TransitionNotAllowed(self.stage.value, stage.value, f"{earlier.value} is incomplete")
        return self._enter(stage)

    def confirm(self) -> Stage:
        self.locked = True
        return self._enter(Stage.CONFIRMATION)


@dataclass
class CheckoutSession:
    cart: CartSnapshot
    pricing: PricingEngine
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    idempotency_key: str = field(default_factory=lambda: uuid.uuid4().hex)
    customer: CustomerIdentity = field(default_factory=CustomerIdentity)
    address: DeliveryAddress = field(default_factory=DeliveryAddress)
    saved_addresses: List[SavedAddress] = field(default_factory=list)
    selected_address_id: Optional[str] = None
    available_quotes: List[ShippingQuote] = field(default_factory=list)
    shipping: Optional[BoundShippingQuote] = None
    coupon: Optional[CouponApplied] = None
    referral: ReferralAttribution = field(default_factory=ReferralAttribution)
    payment_method: Optional[PaymentMethod] = None
    save_as_default: bool = False
    attribution: MarketingAttribution = field(default_factory=MarketingAttribution)
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    payment: Optional[PaymentAttempt] = None
    payment_error: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)
    placing: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        self.state = CheckoutStateMachine(self)

    @property
    def user_id(self) -> str:
        return self.cart.user_id

    @property
    def bound_quote(self) -> Optional[ShippingQuote]:
        return self.shipping.quote if ShippingQuoteBinder.is_bound(self) else None

    @property
    def totals(self) -> PriceBreakdown:
        return self.pricing.compute(self.cart, self.coupon, self.payment_method, self.bound_quote)

    def _ensure_editable(self):
        if self.state.locked:
            raise CheckoutValidationError("Checkout is already confirmed")

    def update_customer(self, **fields: Any) -> CustomerIdentity:
        self._ensure_editable()
        self.customer = self.customer.model_copy(update=fields)
        return self.customer

    def update_address(self, **fields: Any) -> DeliveryAddress:
        """Edit address fields. Any real change detaches a selected saved address and drops the shipping binding."""
        self._ensure_editable()
        try:
            updated = DeliveryAddress(**{**self.address.model_dump(), **fields})
        except ValidationError as e:
            raise CheckoutValidationError(f"Invalid address: {e.errors()[0]['msg']}") from e
        if updated != self.address:
            self.address = updated
            if self.selected_address_id:
                logger.debug("Session %s detached saved address %s", self.id, self.selected_address_id)
            self.selected_address_id = None
            self._drop_shipping()
        return self.address

    def select_saved_address(self, address_id: str) -> DeliveryAddress:
        self._ensure_editable()
        saved = next((a for a in self.saved_addresses if a.id == address_id), None)
        if saved is None:
            raise CheckoutValidationError(f"Unknown address {address_id}")
        address = saved.as_delivery_address()
        if address != self.address:
            self._drop_shipping()
        self.address = address
        self.selected_address_id = address_id
        return self.address

    def _drop_shipping(self):
        self.shipping = None
        self.available_quotes = []

    def set_payment_method(self, method: str) -> None:
        self._ensure_editable()
        if method not in PAYMENT_METHODS:
            raise CheckoutValidationError(f"Unsupported payment method {method}")
        self.payment_method = method

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.state.stage.value,
            "created_at": self.created_at,
            "stages": [
                {"key": s.value, "complete": self.state.is_complete(s), "reached": i <= self.state.furthest}
                for i, s in enumerate(STAGES)
            ],
            "cart": [{**ln.model_dump(), "extended_price": ln.extended_price} for ln in self.cart.lines],
            "customer": self.customer,
            "address": self.address,
            "selected_address_id": self.selected_address_id,
            "saved_addresses": self.saved_addresses,
            "available_quotes": self.available_quotes,
            "shipping": self.bound_quote,
            "coupon": self.coupon,
            "referral": self.referral,
            "payment_method": self.payment_method,
            "save_as_default": self.save_as_default,
            "totals": self.totals,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "payment": self.payment,
            "payment_error": self.payment_error,
        }


def start_checkout(
    user_id: str,
    carts: CartStore,
    catalog: CatalogStore,
    addresses: SavedAddressStore,
    pricing: PricingEngine,
    referrals: ReferralVerifier,
    customer: Optional[CustomerIdentity] = None,
    referral_code: Optional[str] = None,
) -> CheckoutSession:
    """Snapshot the cart and prefill the session with the buyer's default address and referral code."""
    cart = snapshot_cart(user_id, carts.get_items(user_id), catalog)
    if cart.is_empty:
        raise CheckoutValidationError("Cart is empty")
    session = CheckoutSession(cart=cart, pricing=pricing, customer=customer or CustomerIdentity())
    session.saved_addresses = addresses.list_for_user(user_id)
    default = next((a for a in session.saved_addresses if a.is_default), None)
    if default is not None:
        session.address = default.as_delivery_address()
        session.selected_address_id = default.id
    if referral_code:
        referrals.reverify(session, referral_code)
    return session


class SessionRegistry:
    """In-process session store. Sessions idle for longer than ``ttl`` count as abandoned and are dropped."""

    def __init__(self, ttl: Optional[timedelta] = None):
        self.ttl = ttl if ttl is not None else timedelta(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES)
        self._sessions: Dict[str, CheckoutSession] = {}
        self._seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _sweep(self, now: datetime) -> None:
        for sid, seen in list(self._seen.items()):
            session = self._sessions[sid]
            if now - seen > self.ttl and not session.placing.locked():
                logger.info("Checkout session %s abandoned, dropping it", sid)
                del self._sessions[sid], self._seen[sid]

    def add(self, session: CheckoutSession) -> CheckoutSession:
        now = now_utc()
        with self._lock:
            self._sweep(now)
            self._sessions[session.id] = session
            self._seen[session.id] = now
        return session

    def get(self, session_id: str) -> CheckoutSession:
        now = now_utc()
        with self._lock:
            self._sweep(now)
            session = self._sessions.get(session_id)
            if session is not None:
                self._seen[session_id] = now
        if session is None:
            raise SessionNotFound(f"Checkout session {session_id} not found")
        return session

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._seen.pop(session_id, None)
