import pytest

from coupons import CouponApplied
from errors import CheckoutValidationError
from pricing import PricingEngine, coupon_amount, resolve_unit_price, snapshot_cart
from schemas import CartItem, CartLine, CartSnapshot, Product, ProductVariant, ShippingQuote, VariantGroupDetail


def cart_of(*prices_and_qty):
    lines = [
        CartLine(product_id=f"p{i}", product_name=f"Item {i}", unit_price=price, quantity=qty)
        for i, (price, qty) in enumerate(prices_and_qty)
    ]
    return CartSnapshot(user_id="u1", lines=lines)


def flat(price=15.0):
    return ShippingQuote(id="flat", name="Envio Padrão", price=price)


def percent(value):
    return CouponApplied(code="P", discount_type="percentage", discount_value=value, discount_amount=0)


def fixed(value):
    return CouponApplied(code="F", discount_type="fixed", discount_value=value, discount_amount=0)


def test_coupon_then_instant_transfer_then_shipping():
    totals = PricingEngine(instant_transfer_rate=0.05).compute(cart_of((100, 2)), percent(10), "instant_transfer", flat())
    assert totals.subtotal == 200.00
    assert totals.coupon_discount == 20.00
    assert totals.payment_method_discount == 9.00
    assert totals.shipping_cost == 15.00
    assert totals.final_total == 186.00
    assert totals.discount == 29.00


def test_card_gets_no_method_discount():
    totals = PricingEngine(instant_transfer_rate=0.05).compute(cart_of((100, 2)), None, "card", flat())
    assert totals.payment_method_discount == 0
    assert totals.final_total == 215.00


def test_no_quote_means_zero_shipping():
    totals = PricingEngine(instant_transfer_rate=0.05).compute(cart_of((50, 1)))
    assert totals.shipping_cost == 0
    assert totals.final_total == 50.00


def test_fixed_coupon_is_capped_at_subtotal_and_shipping_is_never_discounted():
    totals = PricingEngine(instant_transfer_rate=0.05).compute(cart_of((40, 1)), fixed(500), "instant_transfer", flat(12.5))
    assert totals.coupon_discount == 40.00
    assert totals.payment_method_discount == 0
    assert totals.final_total == 12.50


@pytest.mark.parametrize("coupon", [None, percent(10), percent(100), fixed(5), fixed(1000)])
@pytest.mark.parametrize("method", [None, "instant_transfer", "card", "deferred_voucher"])
def test_final_total_never_below_shipping(coupon, method):
    totals = PricingEngine(instant_transfer_rate=0.05).compute(cart_of((19.9, 3), (7.35, 1)), coupon, method, flat(9.9))
    assert totals.coupon_discount <= totals.subtotal
    assert totals.payment_method_discount <= totals.subtotal - totals.coupon_discount
    assert totals.final_total >= totals.shipping_cost >= 0
    assert totals.final_total == round(
        totals.subtotal - totals.coupon_discount - totals.payment_method_discount + totals.shipping_cost, 2)


def test_coupon_amount_rounds_to_cents():
    assert coupon_amount("percentage", 10, 33.33) == 3.33
    assert coupon_amount("fixed", 10, 33.33) == 10.00


def test_unit_price_precedence():
    product = Product(name="Anel", slug="anel", price=100)
    assert resolve_unit_price(product) == 100
    assert resolve_unit_price(product, ProductVariant(id="v", name="Prata")) == 100
    assert resolve_unit_price(product, ProductVariant(id="v", name="Ouro", price=150)) == 150

    options = [
        VariantGroupDetail(group="Aro", name="16", price=80),
        VariantGroupDetail(group="Pedra", name="Zircônia", price=35.5),
    ]
    assert resolve_unit_price(product, None, options) == 115.5
    assert resolve_unit_price(product, ProductVariant(id="v", name="Ouro", price=150), options) == 150
    free_options = [VariantGroupDetail(group="Aro", name="16", price=0)]
    assert resolve_unit_price(product, None, free_options) == 100


def test_snapshot_cart_resolves_lines(catalog):
    items = [
        CartItem(product_id="p1", variant_id="gold", quantity=1),
        CartItem(product_id="p1", variant_id="plain", quantity=2),
        CartItem(product_id="p2", quantity=1, variants_detail=[
            VariantGroupDetail(group="Cor", name="Azul"),
            VariantGroupDetail(group="Tamanho", name="P"),
        ]),
    ]
    cart = snapshot_cart("u1", items, catalog)

    gold, plain, earring = cart.lines
    assert (gold.unit_price, gold.variant_name) == (150, "Ouro")
    assert (plain.unit_price, plain.variant_name, plain.extended_price) == (100, "Prata", 200)
    assert earring.variant_name == "Cor: Azul | Tamanho: P"
    assert earring.unit_price == 50
    assert gold.weight == 0.2
    assert cart.subtotal == 400


def test_snapshot_cart_rejects_unknown_product(catalog):
    with pytest.raises(CheckoutValidationError):
        snapshot_cart("u1", [CartItem(product_id="gone")], catalog)
