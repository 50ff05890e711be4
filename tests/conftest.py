import time
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient

import main
from checkout import CheckoutSession, SessionRegistry, Stage
from coupons import CouponValidator
from payments import GatewayResult, PaymentDispatchAdapter
from placement import OrderPlacementOrchestrator
from pricing import PricingEngine, snapshot_cart
from referral import ReferralVerifier
from schemas import (
    CartItem,
    Coupon,
    CustomerIdentity,
    DeliveryAddress,
    Order,
    OrderItem,
    PaymentAttempt,
    Product,
    ProductVariant,
    SavedAddress,
    Seller,
)
from shipping import FlatRateShippingProvider, ShippingQuoteBinder


# ---------------------- In-memory collaborators ----------------------

class FakeCatalog:
    def __init__(self, products: Dict[str, Product]):
        self.products = products

    def get_product(self, product_id):
        return self.products.get(product_id)


class FakeCarts:
    def __init__(self):
        self.carts: Dict[str, List[CartItem]] = {}
        self.fail_clear = False

    def get_items(self, user_id):
        return [it.model_copy() for it in self.carts.get(user_id, [])]

    def save_items(self, user_id, items):
        self.carts[user_id] = list(items)

    def clear(self, user_id):
        if self.fail_clear:
            raise ConnectionError("cart store down")
        self.carts[user_id] = []


class FakeCoupons:
    def __init__(self, *coupons: Coupon):
        self.coupons = {c.code: c for c in coupons}
        self.fail_increment = False

    def find_by_code(self, code):
        return self.coupons.get(code.strip().upper())

    def increment_usage(self, code):
        if self.fail_increment:
            raise ConnectionError("coupon store down")
        self.coupons[code].used_count += 1


class FakeSellers:
    def __init__(self, *sellers: Seller):
        self.sellers = list(sellers)
        self.fail = False

    def find_active(self, referral_code):
        if self.fail:
            raise ConnectionError("registry down")
        return next((s for s in self.sellers if s.referral_code == referral_code and s.status == "active"), None)


class FakeAddresses:
    def __init__(self, *addresses: SavedAddress):
        self.addresses = list(addresses)
        self.calls: List[str] = []
        self.fail = False

    def list_for_user(self, user_id):
        return sorted((a for a in self.addresses if a.user_id == user_id), key=lambda a: not a.is_default)

    def clear_default(self, user_id):
        if self.fail:
            raise ConnectionError("address store down")
        self.calls.append("clear_default")
        for a in self.addresses:
            if a.user_id == user_id:
                a.is_default = False

    def update(self, address_id, fields):
        self.calls.append("update")
        for i, a in enumerate(self.addresses):
            if a.id == address_id:
                self.addresses[i] = a.model_copy(update=fields)
                return
        raise LookupError(address_id)

    def insert(self, address):
        self.calls.append("insert")
        new_id = f"addr{len(self.addresses) + 1}"
        self.addresses.append(address.model_copy(update={"id": new_id}))
        return new_id

    def defaults(self, user_id):
        return [a for a in self.addresses if a.user_id == user_id and a.is_default]


class FakeOrders:
    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.items: List[OrderItem] = []
        self.fail_header = False
        self.fail_items = False
        self.lose_reply = False

    def insert_order(self, order):
        if self.fail_header:
            raise ConnectionError("orders table unavailable")
        order_id = f"order{len(self.orders) + 1}"
        self.orders[order_id] = order
        if self.lose_reply:
            self.lose_reply = False
            raise TimeoutError("reply lost after write")
        return order_id

    def insert_items(self, items):
        if self.fail_items:
            raise ConnectionError("order_items table unavailable")
        self.items.extend(items)

    def get_order(self, order_id):
        return self.orders.get(order_id)

    def find_by_idempotency_key(self, key):
        return next((oid for oid, o in self.orders.items() if o.idempotency_key == key), None)

    def list_items(self, order_id):
        return [it for it in self.items if it.order_id == order_id]

    def update_payment(self, order_id, fields):
        self.orders[order_id] = self.orders[order_id].model_copy(update=fields)

    def mark_coupon_redeemed(self, order_id):
        self.update_payment(order_id, {"coupon_redeemed": True})


class FakeAttempts:
    def __init__(self):
        self.attempts: List[PaymentAttempt] = []

    def insert(self, attempt):
        self.attempts.append(attempt)
        return f"attempt{len(self.attempts)}"

    def list_for_order(self, order_id):
        return [a for a in self.attempts if a.order_id == order_id]


class FakeGateway:
    name = "fake"

    def __init__(self, behavior: str = "ok", delay: float = 0.5):
        self.behavior = behavior
        self.delay = delay
        self.calls = 0

    def create_intent(self, order_id, order, method, customer):
        self.calls += 1
        if self.behavior == "error":
            raise ConnectionError("connection reset by gateway")
        if self.behavior == "slow":
            time.sleep(self.delay)
        if self.behavior == "redirect":
            return GatewayResult(reference=f"cs_{self.calls}", checkout_url="https://pay.example/cs", redirect=True)
        return GatewayResult(reference=f"ref_{self.calls}", qr_code="000201-fake")


# ---------------------- Fixtures ----------------------

USER = "u1"

ADDRESS = DeliveryAddress(
    zip_code="01310-100", street="Av. Paulista", number="1000", neighborhood="Bela Vista",
    city="São Paulo", state="sp",
)


@pytest.fixture
def catalog():
    return FakeCatalog({
        "p1": Product(
            name="Anel Solitário", slug="anel", price=100,
            variants=[ProductVariant(id="gold", name="Ouro", price=150), ProductVariant(id="plain", name="Prata")],
            shipping_weight=0.2, shipping_width=10, shipping_height=3, shipping_length=12,
        ),
        "p2": Product(name="Brinco", slug="brinco", price=50),
    })


@pytest.fixture
def carts():
    store = FakeCarts()
    store.save_items(USER, [CartItem(product_id="p1", quantity=2)])
    return store


@pytest.fixture
def coupon_store():
    return FakeCoupons(
        Coupon(code="SAVE10", discount_type="percentage", discount_value=10),
        Coupon(code="BIG250", discount_type="percentage", discount_value=10, min_order_value=250),
        Coupon(code="FLAT500", discount_type="fixed", discount_value=500),
        Coupon(code="LAST", discount_type="fixed", discount_value=5, max_uses=1, used_count=1),
        Coupon(code="OFF", discount_type="fixed", discount_value=5, is_active=False),
    )


@pytest.fixture
def sellers():
    return FakeSellers(
        Seller(name="Ana", email="ana@example.com", referral_code="ANA10", status="active"),
        Seller(name="Bia", email="bia@example.com", referral_code="BIA10", status="inactive"),
    )


@pytest.fixture
def addresses():
    return FakeAddresses(
        SavedAddress(id="addr1", user_id=USER, label="Casa", recipient_name="Maria", is_default=True,
                     **ADDRESS.model_dump()),
        SavedAddress(id="addr2", user_id=USER, label="Trabalho", recipient_name="Maria",
                     zip_code="20040-020", street="Rua da Assembleia", number="10", neighborhood="Centro",
                     city="Rio de Janeiro", state="RJ"),
    )


@pytest.fixture
def orders():
    return FakeOrders()


@pytest.fixture
def attempts():
    return FakeAttempts()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pricing():
    return PricingEngine(instant_transfer_rate=0.05)


@pytest.fixture
def binder():
    return ShippingQuoteBinder(FlatRateShippingProvider(flat_rate=15, default_days=7, free_shipping_min=0))


@pytest.fixture
def dispatcher(gateway, orders, attempts):
    return PaymentDispatchAdapter(gateway, orders, attempts, timeout=0.1)


@pytest.fixture
def orchestrator(orders, addresses, coupon_store, carts, dispatcher):
    return OrderPlacementOrchestrator(orders, addresses, coupon_store, carts, dispatcher)


@pytest.fixture
def session(carts, catalog, pricing):
    return CheckoutSession(cart=snapshot_cart(USER, carts.get_items(USER), catalog), pricing=pricing)


@pytest.fixture
def ready_session(session, binder):
    """A session sitting on the payment stage with everything filled in."""
    session.update_customer(name="Maria Silva", email="maria@example.com", phone="11999990000")
    session.state.next()
    session.update_address(**ADDRESS.model_dump())
    binder.request_quotes(session)
    binder.bind(session, "flat")
    session.state.next()
    session.set_payment_method("instant_transfer")
    assert session.state.stage is Stage.PAYMENT
    return session


@pytest.fixture
def services(catalog, carts, coupon_store, sellers, addresses, orders, attempts, pricing, binder, dispatcher,
             orchestrator):
    return main.Services(
        catalog=catalog,
        carts=carts,
        coupon_store=coupon_store,
        addresses=addresses,
        orders=orders,
        attempts=attempts,
        pricing=pricing,
        coupons=CouponValidator(coupon_store),
        referrals=ReferralVerifier(sellers),
        shipping=binder,
        dispatcher=dispatcher,
        placement=orchestrator,
        sessions=SessionRegistry(),
    )


@pytest.fixture
def client(services):
    main.app.dependency_overrides[main.get_services] = lambda: services
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def customer() -> CustomerIdentity:
    return CustomerIdentity(name="Maria Silva", email="maria@example.com", phone="11999990000")
