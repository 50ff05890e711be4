"""
Shipping quotes.

The rate collaborator turns an address and the cart's physical attributes
into an ordered list of quotes. The binder remembers the buyer's choice
together with the address it was quoted for; the binding holds only while
that address is unchanged.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Protocol

from pydantic import BaseModel

from config import settings
from errors import CheckoutValidationError
from schemas import CartSnapshot, DeliveryAddress, ShippingQuote

if TYPE_CHECKING:
    from checkout import CheckoutSession

logger = logging.getLogger(__name__)


def clean_postal_code(value: str) -> str:
    return re.sub(r"\D", "", value or "")


class ShippingRateProvider(Protocol):
    def quote(self, address: DeliveryAddress, cart: CartSnapshot) -> List[ShippingQuote]: ...


@dataclass
class Package:
    weight: float
    width: float
    height: float
    length: float
    declared_value: float


def build_package(cart: CartSnapshot, max_height: float = 100) -> Package:
    """Stack every unit in one box: weights and heights add up, width and length take the max."""
    lines = cart.lines
    return Package(
        weight=round(sum((ln.weight or settings.DEFAULT_SHIPPING_WEIGHT) * ln.quantity for ln in lines), 3),
        width=max(ln.width or settings.DEFAULT_SHIPPING_WIDTH for ln in lines),
        height=min(sum((ln.height or settings.DEFAULT_SHIPPING_HEIGHT) * ln.quantity for ln in lines), max_height),
        length=max(ln.length or settings.DEFAULT_SHIPPING_LENGTH for ln in lines),
        declared_value=cart.subtotal,
    )


class FlatRateShippingProvider:
    def __init__(
        self,
        flat_rate: float = settings.FLAT_SHIPPING_RATE,
        default_days: int = settings.SHIPPING_DEFAULT_DAYS,
        free_shipping_min: float = settings.FREE_SHIPPING_MIN_VALUE,
        margin: float = settings.SHIPPING_MARGIN,
        margin_type: str = settings.SHIPPING_MARGIN_TYPE,
        extra_prep_days: int = settings.EXTRA_PREP_DAYS,
    ):
        self.flat_rate = flat_rate
        self.default_days = default_days
        self.free_shipping_min = free_shipping_min
        self.margin = margin
        self.margin_type = margin_type
        self.extra_prep_days = extra_prep_days

    def _with_margin(self, price: float) -> float:
        if self.margin <= 0:
            return round(price, 2)
        if self.margin_type == "percentage":
            return round(price * (1 + self.margin / 100), 2)
        return round(price + self.margin, 2)

    def quote(self, address: DeliveryAddress, cart: CartSnapshot) -> List[ShippingQuote]:
        if not clean_postal_code(address.zip_code) or cart.is_empty:
            raise ValueError("Postal code and items are required")
        package = build_package(cart)
        days = self.default_days + self.extra_prep_days
        quotes = [ShippingQuote(
            id="flat",
            name="Envio Padrão",
            company="Loja",
            service_code="flat_rate",
            price=self._with_margin(self.flat_rate),
            delivery_min=days,
            delivery_max=days + 3,
        )]
        if self.free_shipping_min > 0 and package.declared_value >= self.free_shipping_min:
            base_days = max(max(q.delivery_max for q in quotes), 7)
            quotes.insert(0, ShippingQuote(
                id="free",
                name="Frete Grátis",
                company="Loja",
                service_code="free_shipping",
                price=0,
                delivery_min=base_days,
                delivery_max=base_days + 3,
            ))
        logger.debug("Quoted %d options for %s (%.3f kg)", len(quotes), address.zip_code, package.weight)
        return quotes


class BoundShippingQuote(BaseModel):
    quote: ShippingQuote
    address: DeliveryAddress


class ShippingQuoteBinder:
    def __init__(self, provider: ShippingRateProvider):
        self.provider = provider

    def request_quotes(self, session: "CheckoutSession") -> List[ShippingQuote]:
        if not session.address.is_complete():
            raise CheckoutValidationError("Complete the delivery address before calculating shipping")
        try:
            quotes = self.provider.quote(session.address, session.cart)
        except Exception as e:
            logger.warning("Shipping quote failed for session %s: %s", session.id, e)
            raise CheckoutValidationError("Could not calculate shipping for this address") from e
        session.available_quotes = quotes
        return quotes

    def bind(self, session: "CheckoutSession", quote_id: str) -> BoundShippingQuote:
        quote = next((q for q in session.available_quotes if q.id == quote_id), None)
        if quote is None:
            raise CheckoutValidationError(f"Unknown shipping option {quote_id}")
        session.shipping = BoundShippingQuote(quote=quote, address=session.address.model_copy())
        return session.shipping

    @staticmethod
    def is_bound(session: "CheckoutSession") -> bool:
        bound: Optional[BoundShippingQuote] = session.shipping
        return bound is not None and bound.address == session.address
