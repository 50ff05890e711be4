"""
Price computation for checkout.

Discount stacking order: the coupon applies to the subtotal, the
payment-method incentive applies to what is left after the coupon, and
shipping is added last and never discounted.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Optional

from config import settings
from errors import CheckoutValidationError
from schemas import (
    CartItem,
    CartLine,
    CartSnapshot,
    PaymentMethod,
    PriceBreakdown,
    Product,
    ProductVariant,
    ShippingQuote,
    VariantGroupDetail,
)

if TYPE_CHECKING:
    from coupons import CouponApplied
    from stores import CatalogStore


def money(value: float) -> float:
    return round(value, 2)


def resolve_unit_price(
    product: Product,
    variant: Optional[ProductVariant] = None,
    variants_detail: Iterable[VariantGroupDetail] = (),
) -> float:
    # variant override > selected sub-option sum > product base price
    if variant is not None and variant.price is not None:
        return money(variant.price)
    options_total = sum(d.price for d in variants_detail if d.price)
    if options_total > 0:
        return money(options_total)
    return money(product.price)


def describe_variant(variant: Optional[ProductVariant], variants_detail: List[VariantGroupDetail]) -> Optional[str]:
    if variants_detail:
        return " | ".join(f"{d.group}: {d.name}" for d in variants_detail)
    return variant.name if variant else None


def snapshot_cart(user_id: str, items: List[CartItem], catalog: "CatalogStore") -> CartSnapshot:
    lines = []
    for item in items:
        product = catalog.get_product(item.product_id)
        if product is None:
            raise CheckoutValidationError(f"Product {item.product_id} is no longer available")
        variant = product.find_variant(item.variant_id)
        lines.append(CartLine(
            product_id=item.product_id,
            variant_id=item.variant_id,
            product_name=product.name,
            variant_name=describe_variant(variant, item.variants_detail),
            variants_detail=item.variants_detail,
            quantity=item.quantity,
            unit_price=resolve_unit_price(product, variant, item.variants_detail),
            weight=product.shipping_weight,
            width=product.shipping_width,
            height=product.shipping_height,
            length=product.shipping_length,
        ))
    return CartSnapshot(user_id=user_id, lines=lines)


def coupon_amount(discount_type: str, discount_value: float, subtotal: float) -> float:
    """Raw coupon discount for a subtotal, capped at the subtotal."""
    if discount_type == "percentage":
        amount = subtotal * (discount_value / 100.0)
    else:
        amount = discount_value
    return money(min(max(amount, 0.0), subtotal))


class PricingEngine:
    def __init__(self, instant_transfer_rate: Optional[float] = None):
        if instant_transfer_rate is None:
            instant_transfer_rate = settings.INSTANT_TRANSFER_DISCOUNT
        self.instant_transfer_rate = instant_transfer_rate

    def method_rate(self, method: Optional[PaymentMethod]) -> float:
        return self.instant_transfer_rate if method == "instant_transfer" else 0.0

    def compute(
        self,
        cart: CartSnapshot,
        coupon: Optional["CouponApplied"] = None,
        method: Optional[PaymentMethod] = None,
        quote: Optional[ShippingQuote] = None,
    ) -> PriceBreakdown:
        subtotal = cart.subtotal
        coupon_discount = coupon_amount(coupon.discount_type, coupon.discount_value, subtotal) if coupon else 0.0
        discounted = money(subtotal - coupon_discount)
        method_discount = money(min(discounted * self.method_rate(method), discounted))
        shipping_cost = money(quote.price) if quote else 0.0
        final_total = money(max(discounted - method_discount, 0.0) + shipping_cost)
        return PriceBreakdown(
            subtotal=subtotal,
            coupon_discount=coupon_discount,
            payment_method_discount=method_discount,
            shipping_cost=shipping_cost,
            final_total=final_total,
        )
