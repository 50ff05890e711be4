import pytest

from errors import CheckoutValidationError
from schemas import CartLine, CartSnapshot, DeliveryAddress
from shipping import FlatRateShippingProvider, ShippingQuoteBinder, build_package, clean_postal_code

from conftest import ADDRESS


class BrokenProvider:
    def quote(self, address, cart):
        raise TimeoutError("carrier API timed out")


def test_clean_postal_code():
    assert clean_postal_code("01310-100") == "01310100"
    assert clean_postal_code("") == ""


def test_flat_quote(session):
    quotes = FlatRateShippingProvider(flat_rate=15, default_days=7, free_shipping_min=0).quote(ADDRESS, session.cart)
    assert [q.id for q in quotes] == ["flat"]
    assert quotes[0].price == 15
    assert (quotes[0].delivery_min, quotes[0].delivery_max) == (7, 10)


def test_free_shipping_is_listed_first_above_minimum(session):
    provider = FlatRateShippingProvider(flat_rate=15, default_days=7, free_shipping_min=199)
    quotes = provider.quote(ADDRESS, session.cart)
    assert [q.id for q in quotes] == ["free", "flat"]
    assert quotes[0].price == 0

    provider.free_shipping_min = 500
    assert [q.id for q in provider.quote(ADDRESS, session.cart)] == ["flat"]


def test_margin_and_prep_days(session):
    percent = FlatRateShippingProvider(flat_rate=20, margin=10, margin_type="percentage", extra_prep_days=2)
    quote = percent.quote(ADDRESS, session.cart)[-1]
    assert quote.price == 22
    assert quote.delivery_min == percent.default_days + 2

    fixed = FlatRateShippingProvider(flat_rate=20, margin=4.5, margin_type="fixed")
    assert fixed.quote(ADDRESS, session.cart)[-1].price == 24.5


def test_provider_requires_postal_code(session):
    with pytest.raises(ValueError):
        FlatRateShippingProvider().quote(DeliveryAddress(zip_code="--"), session.cart)


def test_package_stacks_units_and_fills_defaults():
    cart = CartSnapshot(user_id="u1", lines=[
        CartLine(product_id="a", product_name="A", unit_price=10, quantity=2, weight=0.5, width=10, height=60, length=20),
        CartLine(product_id="b", product_name="B", unit_price=5, quantity=1),
    ])
    package = build_package(cart)
    assert package.weight == 1.3
    assert package.width == 11
    assert package.height == 100
    assert package.length == 20
    assert package.declared_value == 25


def test_request_and_bind(session, binder):
    session.update_address(**ADDRESS.model_dump())
    quotes = binder.request_quotes(session)
    assert session.available_quotes == quotes

    bound = binder.bind(session, "flat")
    assert bound.address == session.address
    assert ShippingQuoteBinder.is_bound(session)
    assert session.totals.shipping_cost == 15


def test_quotes_need_a_complete_address(session, binder):
    session.update_address(zip_code="01310-100")
    with pytest.raises(CheckoutValidationError):
        binder.request_quotes(session)


def test_provider_failure_is_a_validation_error(session):
    session.update_address(**ADDRESS.model_dump())
    with pytest.raises(CheckoutValidationError):
        ShippingQuoteBinder(BrokenProvider()).request_quotes(session)
    assert session.available_quotes == []


def test_unknown_quote_cannot_be_bound(session, binder):
    session.update_address(**ADDRESS.model_dump())
    binder.request_quotes(session)
    with pytest.raises(CheckoutValidationError):
        binder.bind(session, "express")
    assert session.shipping is None


def test_address_change_invalidates_binding(session, binder):
    session.update_address(**ADDRESS.model_dump())
    binder.request_quotes(session)
    binder.bind(session, "flat")

    session.update_address(number="2000")
    assert not ShippingQuoteBinder.is_bound(session)
    assert session.bound_quote is None
    assert session.available_quotes == []
    assert session.totals.shipping_cost == 0


def test_same_values_keep_binding(session, binder):
    session.update_address(**ADDRESS.model_dump())
    binder.request_quotes(session)
    binder.bind(session, "flat")

    session.update_address(street=ADDRESS.street)
    assert ShippingQuoteBinder.is_bound(session)
