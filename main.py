import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr

from checkout import CheckoutSession, SessionRegistry, Stage, start_checkout
from config import settings
from coupons import CouponApplied, CouponValidator
from database import create_document, db, get_documents, now_utc
from errors import CheckoutValidationError, DispatchError, PlacementInProgress, SessionNotFound
from payments import PaymentDispatchAdapter, gateway_from_settings
from placement import PAYMENT_RETRY_GUIDANCE, OrderPlacementOrchestrator
from pricing import PricingEngine
from referral import ReferralVerifier
from schemas import (
    CartItem,
    Coupon,
    CustomerIdentity,
    MarketingAttribution,
    PaymentMethod,
    SavedAddress,
    Seller,
    VariantGroupDetail,
)
from shipping import FlatRateShippingProvider, ShippingQuoteBinder
from stores import (
    MongoCartStore,
    MongoCatalogStore,
    MongoCouponStore,
    MongoOrderStore,
    MongoPaymentAttemptStore,
    MongoSavedAddressStore,
    MongoSellerRegistry,
)

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("storefront")

app = FastAPI(title="Storefront Checkout API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ADMIN_KEY = settings.ADMIN_KEY

# ---------------------- Services ----------------------

@dataclass
class Services:
    catalog: Any
    carts: Any
    coupon_store: Any
    addresses: Any
    orders: Any
    attempts: Any
    pricing: PricingEngine
    coupons: CouponValidator
    referrals: ReferralVerifier
    shipping: ShippingQuoteBinder
    dispatcher: PaymentDispatchAdapter
    placement: OrderPlacementOrchestrator
    sessions: SessionRegistry

def build_services(database) -> Services:
    catalog = MongoCatalogStore(database)
    carts = MongoCartStore(database)
    coupon_store = MongoCouponStore(database)
    addresses = MongoSavedAddressStore(database)
    orders = MongoOrderStore(database)
    attempts = MongoPaymentAttemptStore(database)
    dispatcher = PaymentDispatchAdapter(gateway_from_settings(), orders, attempts)
    return Services(
        catalog=catalog,
        carts=carts,
        coupon_store=coupon_store,
        addresses=addresses,
        orders=orders,
        attempts=attempts,
        pricing=PricingEngine(),
        coupons=CouponValidator(coupon_store),
        referrals=ReferralVerifier(MongoSellerRegistry(database)),
        shipping=ShippingQuoteBinder(FlatRateShippingProvider()),
        dispatcher=dispatcher,
        placement=OrderPlacementOrchestrator(orders, addresses, coupon_store, carts, dispatcher),
        sessions=SessionRegistry(),
    )

_services: Optional[Services] = None

def get_services() -> Services:
    global _services
    if _services is None:
        if db is None:
            raise HTTPException(500, "Database not configured")
        _services = build_services(db)
        try:
            _services.orders.ensure_indexes()
        except Exception as e:
            logger.warning("Could not create order indexes: %s", e)
    return _services

def get_session(sid: str, services: Services = Depends(get_services)) -> CheckoutSession:
    return services.sessions.get(sid)

# ---------------------- Error mapping ----------------------

@app.exception_handler(CheckoutValidationError)
def on_validation_error(request: Request, exc: CheckoutValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(SessionNotFound)
def on_session_not_found(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(PlacementInProgress)
def on_placement_in_progress(request: Request, exc: PlacementInProgress):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

# ---------------------- Models ----------------------

class CartBody(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 1
    variants_detail: List[VariantGroupDetail] = []

class CustomerBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None

class AddressBody(BaseModel):
    zip_code: Optional[str] = None
    street: Optional[str] = None
    number: Optional[str] = None
    complement: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None

class StartCheckoutBody(BaseModel):
    user_id: str
    customer: Optional[CustomerBody] = None
    referral_code: Optional[str] = None
    attribution: Optional[MarketingAttribution] = None

class SelectAddressBody(BaseModel):
    address_id: str

class SelectQuoteBody(BaseModel):
    quote_id: str

class CodeBody(BaseModel):
    code: str

class PaymentMethodBody(BaseModel):
    method: PaymentMethod
    save_as_default: Optional[bool] = None

class GotoBody(BaseModel):
    stage: Stage

class PlaceOrderBody(BaseModel):
    save_as_default: Optional[bool] = None

class CouponCheckBody(BaseModel):
    code: str
    subtotal: float

class RetryPaymentBody(BaseModel):
    method: Optional[PaymentMethod] = None

class PaymentVerifyBody(BaseModel):
    order_id: str
    payment_id: str
    status: Literal["paid", "failed", "canceled"] = "paid"
    signature: Optional[str] = None

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Storefront checkout API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                response["collections"] = db.list_collection_names()
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response

# ---------------------- Catalog (read-only) ----------------------

@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None, limit: int = 50):
    if db is None:
        raise HTTPException(500, "Database not configured")
    filt: Dict[str, Any] = {}
    if q:
        filt["name"] = {"$regex": q, "$options": "i"}
    if category:
        filt["category"] = category
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    out = []
    for p in db["product"].find(filt).limit(limit):
        p["_id"] = str(p["_id"])
        out.append(p)
    return out

@app.get("/products/{pid}")
def get_product(pid: str, services: Services = Depends(get_services)):
    prod = services.catalog.get_product(pid)
    if not prod:
        raise HTTPException(404, "Product not found")
    return {"_id": pid, **prod.model_dump()}

# ---------------------- Cart ----------------------

@app.get("/cart")
def get_cart(user_id: str = Query(...), services: Services = Depends(get_services)):
    return {"user_id": user_id, "items": services.carts.get_items(user_id)}

@app.post("/cart/add")
def add_to_cart(item: CartBody, user_id: str = Query(...), services: Services = Depends(get_services)):
    if item.quantity < 1:
        raise HTTPException(400, "Quantity must be at least 1")
    if services.catalog.get_product(item.product_id) is None:
        raise HTTPException(404, "Product not found")
    items = services.carts.get_items(user_id)
    # grouped sub-option selections always get their own line
    existing = None if item.variants_detail else next(
        (it for it in items if it.product_id == item.product_id and it.variant_id == item.variant_id and not it.variants_detail),
        None,
    )
    if existing:
        existing.quantity += item.quantity
    else:
        items.append(CartItem(**item.model_dump()))
    services.carts.save_items(user_id, items)
    return {"ok": True}

@app.post("/cart/remove")
def remove_from_cart(item: CartBody, user_id: str = Query(...), services: Services = Depends(get_services)):
    items = [
        it for it in services.carts.get_items(user_id)
        if not (it.product_id == item.product_id and it.variant_id == item.variant_id)
    ]
    services.carts.save_items(user_id, items)
    return {"ok": True}

# ---------------------- Saved Addresses ----------------------

@app.get("/addresses")
def list_addresses(user_id: str = Query(...), services: Services = Depends(get_services)):
    return services.addresses.list_for_user(user_id)

@app.post("/addresses")
def add_address(body: SavedAddress, services: Services = Depends(get_services)):
    if body.is_default:
        services.addresses.clear_default(body.user_id)
    return {"_id": services.addresses.insert(body)}

# ---------------------- Checkout ----------------------

@app.post("/checkout/sessions")
def open_checkout(body: StartCheckoutBody, services: Services = Depends(get_services)):
    customer = CustomerIdentity(**body.customer.model_dump(exclude_none=True)) if body.customer else None
    session = start_checkout(
        body.user_id,
        services.carts,
        services.catalog,
        services.addresses,
        services.pricing,
        services.referrals,
        customer=customer,
        referral_code=body.referral_code,
    )
    if body.attribution:
        session.attribution = body.attribution
    services.sessions.add(session)
    logger.info("Checkout session %s opened for %s with %d lines", session.id, body.user_id, len(session.cart.lines))
    return session.summary()

@app.get("/checkout/sessions/{sid}")
def get_checkout(session: CheckoutSession = Depends(get_session)):
    return session.summary()

@app.delete("/checkout/sessions/{sid}")
def abandon_checkout(sid: str, services: Services = Depends(get_services)):
    services.sessions.get(sid)
    services.sessions.discard(sid)
    return {"ok": True}

@app.put("/checkout/sessions/{sid}/customer")
def update_customer(body: CustomerBody, session: CheckoutSession = Depends(get_session)):
    session.update_customer(**body.model_dump(exclude_none=True))
    return session.summary()

@app.put("/checkout/sessions/{sid}/address")
def update_address(body: AddressBody, session: CheckoutSession = Depends(get_session)):
    session.update_address(**body.model_dump(exclude_none=True))
    return session.summary()

@app.post("/checkout/sessions/{sid}/address/select")
def select_address(body: SelectAddressBody, session: CheckoutSession = Depends(get_session)):
    session.select_saved_address(body.address_id)
    return session.summary()

@app.post("/checkout/sessions/{sid}/shipping/quotes")
def shipping_quotes(session: CheckoutSession = Depends(get_session), services: Services = Depends(get_services)):
    return {"quotes": services.shipping.request_quotes(session)}

@app.post("/checkout/sessions/{sid}/shipping/select")
def select_shipping(body: SelectQuoteBody, session: CheckoutSession = Depends(get_session),
                    services: Services = Depends(get_services)):
    services.shipping.bind(session, body.quote_id)
    return session.summary()

@app.post("/checkout/sessions/{sid}/coupon")
def apply_coupon(body: CodeBody, session: CheckoutSession = Depends(get_session),
                 services: Services = Depends(get_services)):
    result = services.coupons.apply(session, body.code)
    if not isinstance(result, CouponApplied):
        raise HTTPException(400, {"reason": result.reason.value, "message": result.message})
    return session.summary()

@app.delete("/checkout/sessions/{sid}/coupon")
def remove_coupon(session: CheckoutSession = Depends(get_session), services: Services = Depends(get_services)):
    services.coupons.remove(session)
    return session.summary()

@app.post("/checkout/sessions/{sid}/referral")
def verify_referral(body: CodeBody, session: CheckoutSession = Depends(get_session),
                    services: Services = Depends(get_services)):
    services.referrals.reverify(session, body.code)
    return session.summary()

@app.put("/checkout/sessions/{sid}/payment-method")
def set_payment_method(body: PaymentMethodBody, session: CheckoutSession = Depends(get_session)):
    session.set_payment_method(body.method)
    if body.save_as_default is not None:
        session.save_as_default = body.save_as_default
    return session.summary()

@app.put("/checkout/sessions/{sid}/attribution")
def set_attribution(body: MarketingAttribution, session: CheckoutSession = Depends(get_session)):
    session.attribution = body
    return {"ok": True}

@app.post("/checkout/sessions/{sid}/next")
def next_stage(session: CheckoutSession = Depends(get_session)):
    session.state.next()
    return session.summary()

@app.post("/checkout/sessions/{sid}/back")
def previous_stage(session: CheckoutSession = Depends(get_session)):
    session.state.back()
    return session.summary()

@app.post("/checkout/sessions/{sid}/goto")
def goto_stage(body: GotoBody, session: CheckoutSession = Depends(get_session)):
    session.state.go_to(body.stage)
    return session.summary()

@app.post("/checkout/sessions/{sid}/place-order")
def place_order(body: PlaceOrderBody, session: CheckoutSession = Depends(get_session),
                services: Services = Depends(get_services)):
    if body.save_as_default is not None:
        session.save_as_default = body.save_as_default
    result = services.placement.place(session)
    if not result.placed:
        raise HTTPException(503, "Could not create the order, please try again")
    if result.confirmed:
        services.sessions.discard(session.id)
    return {
        "order_id": result.order_id,
        "order_number": result.order_number,
        "stage": session.state.stage.value,
        "confirmed": result.confirmed,
        "redirect_url": result.redirect_url,
        "payment": result.payment,
        "payment_error": result.payment_error,
        "totals": session.totals,
        "steps": [{"step": o.step, "status": o.status.value, "detail": o.detail} for o in result.outcomes],
    }

@app.post("/coupons/validate")
def validate_coupon(body: CouponCheckBody, services: Services = Depends(get_services)):
    return services.coupons.validate(body.code, body.subtotal)

# ---------------------- Orders & Payments ----------------------

@app.get("/orders")
def list_orders(user_id: Optional[str] = None):
    if db is None:
        raise HTTPException(500, "Database not configured")
    filt: Dict[str, Any] = {}
    if user_id:
        filt["user_id"] = user_id
    cur = db["order"].find(filt).sort("created_at", -1)
    out = []
    for o in cur:
        o["_id"] = str(o["_id"])
        out.append(o)
    return out

@app.get("/orders/{oid_str}")
def get_order(oid_str: str, services: Services = Depends(get_services)):
    order = services.orders.get_order(oid_str)
    if not order:
        raise HTTPException(404, "Order not found")
    return {
        "_id": oid_str,
        **order.model_dump(),
        "items": services.orders.list_items(oid_str),
        "payments": services.attempts.list_for_order(oid_str),
    }

@app.post("/orders/{oid_str}/payments")
def retry_payment(oid_str: str, body: RetryPaymentBody, services: Services = Depends(get_services)):
    order = services.orders.get_order(oid_str)
    if not order:
        raise HTTPException(404, "Order not found")
    customer = CustomerIdentity(name=order.customer_name, email=order.customer_email, phone=order.customer_phone)
    try:
        return services.dispatcher.create_payment_intent(oid_str, body.method, customer)
    except DispatchError as e:
        if not e.retryable:
            raise HTTPException(409, str(e))
        raise HTTPException(502, {"message": str(e), "guidance": PAYMENT_RETRY_GUIDANCE})

@app.post("/payment/verify")
def payment_verify(body: PaymentVerifyBody, services: Services = Depends(get_services)):
    # Settlement callback from the provider; the checkout flow itself never leaves "pending"
    order = services.orders.get_order(body.order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    if order.status != "pending":
        return {"ok": True, "status": order.status}
    services.orders.update_payment(body.order_id, {
        "status": body.status,
        "payment_status": body.status,
        "payment_reference": body.payment_id,
    })
    logger.info("Order %s settled as %s", body.order_id, body.status)
    return {"ok": True, "status": body.status}

# ---------------------- Admin: Coupons & Sellers ----------------------

@app.post("/admin/coupons")
def admin_add_coupon(body: Coupon, x_admin_key: str = Header(None)):
    if x_admin_key != ADMIN_KEY:
        raise HTTPException(401, "Unauthorized")
    if db["coupon"].find_one({"code": body.code}):
        raise HTTPException(400, "Coupon code already exists")
    return {"_id": create_document("coupon", body.model_dump())}

@app.get("/admin/coupons")
def admin_list_coupons(active: Optional[bool] = None, x_admin_key: str = Header(None)):
    if x_admin_key != ADMIN_KEY:
        raise HTTPException(401, "Unauthorized")
    filt = {"is_active": active} if active is not None else {}
    return get_documents("coupon", filt, limit=500)

@app.post("/admin/sellers")
def admin_add_seller(body: Seller, x_admin_key: str = Header(None)):
    if x_admin_key != ADMIN_KEY:
        raise HTTPException(401, "Unauthorized")
    if db["seller"].find_one({"referral_code": body.referral_code}):
        raise HTTPException(400, "Referral code already taken")
    return {"_id": create_document("seller", body.model_dump())}

# ---------------------- Seed Demo Data ----------------------

@app.post("/admin/seed")
def seed(x_admin_key: str = Header(None)):
    if x_admin_key != ADMIN_KEY:
        raise HTTPException(401, "Unauthorized")
    if db["product"].count_documents({}) == 0:
        demo = []
        for i in range(1, 9):
            demo.append({
                "name": f"Anel Solitário {i}",
                "slug": f"anel-solitario-{i}",
                "description": "Sterling silver ring with a single stone.",
                "price": 150 + i * 10,
                "currency": "BRL",
                "category": "aneis",
                "stock": 50,
                "images": [{"url": f"https://picsum.photos/seed/ring{i}/600/400", "alt": "Product image"}],
                "variants": [
                    {"id": f"ring{i}-gold", "name": "Banho de ouro", "price": 190 + i * 10, "stock": 20},
                    {"id": f"ring{i}-silver", "name": "Prata", "price": None, "stock": 30},
                ],
                "shipping_weight": 0.1,
                "shipping_width": 10,
                "shipping_height": 4,
                "shipping_length": 10,
                "created_at": now_utc(),
                "updated_at": now_utc(),
            })
        db["product"].insert_many(demo)
    if db["coupon"].count_documents({}) == 0:
        db["coupon"].insert_many([
            {"code": "SAVE10", "discount_type": "percentage", "discount_value": 10, "is_active": True,
             "used_count": 0, "created_at": now_utc()},
            {"code": "BEMVINDO", "discount_type": "fixed", "discount_value": 25, "is_active": True,
             "min_order_value": 150, "max_uses": 100, "used_count": 0, "created_at": now_utc()},
        ])
    if db["seller"].count_documents({}) == 0:
        db["seller"].insert_one({"name": "Ana Vendas", "email": "ana@example.com", "referral_code": "ANA10",
                                 "status": "active", "created_at": now_utc()})
    return {"ok": True}

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
