"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product",
SavedAddress is stored in "customer_address").
Checkout-only value objects (CartLine, PriceBreakdown, ...) are never stored
on their own; they are embedded in order documents.
"""
from datetime import datetime
from typing import ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

PaymentMethod = Literal["instant_transfer", "card", "deferred_voucher"]
OrderStatus = Literal["pending", "paid", "failed", "canceled"]
PAYMENT_METHODS = ("instant_transfer", "card", "deferred_voucher")


# ---------------------- Catalog ----------------------

class ProductVariant(BaseModel):
    id: str
    name: str
    price: Optional[float] = Field(None, ge=0, description="Overrides the product price when set")
    stock: int = 0

class Product(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    currency: str = "BRL"
    category: Optional[str] = None
    stock: int = 0
    images: List[Dict[str, str]] = []
    variants: List[ProductVariant] = []
    shipping_weight: float = Field(0, ge=0, description="kg")
    shipping_width: float = Field(0, ge=0, description="cm")
    shipping_height: float = Field(0, ge=0, description="cm")
    shipping_length: float = Field(0, ge=0, description="cm")

    def find_variant(self, variant_id: Optional[str]) -> Optional[ProductVariant]:
        if not variant_id:
            return None
        return next((v for v in self.variants if v.id == variant_id), None)


# ---------------------- Cart ----------------------

class VariantGroupDetail(BaseModel):
    group: str = Field(..., description="e.g. Size, Stone")
    name: str
    price: Optional[float] = Field(None, ge=0)
    variant_id: Optional[str] = None

class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    variants_detail: List[VariantGroupDetail] = []

class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []

class CartLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    variants_detail: List[VariantGroupDetail] = []
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    weight: float = 0
    width: float = 0
    height: float = 0
    length: float = 0

    @property
    def extended_price(self) -> float:
        return round(self.unit_price * self.quantity, 2)

class CartSnapshot(BaseModel):
    user_id: str
    lines: List[CartLine] = []

    @property
    def subtotal(self) -> float:
        return round(sum(line.extended_price for line in self.lines), 2)

    @property
    def is_empty(self) -> bool:
        return not self.lines


# ---------------------- Customer ----------------------

class CustomerIdentity(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""

    def is_complete(self) -> bool:
        return all(v.strip() for v in (self.name, self.email, self.phone))

class DeliveryAddress(BaseModel):
    zip_code: str = ""
    street: str = ""
    number: str = ""
    complement: Optional[str] = None
    neighborhood: str = ""
    city: str = ""
    state: str = Field("", max_length=2, description="2-letter state code")

    REQUIRED_FIELDS: ClassVar[tuple] = ("zip_code", "street", "number", "neighborhood", "city", "state")

    @field_validator("state")
    @classmethod
    def upper_state(cls, v: str) -> str:
        return v.strip().upper()

    def is_complete(self) -> bool:
        return all(getattr(self, f).strip() for f in self.REQUIRED_FIELDS)

    def as_delivery_address(self) -> "DeliveryAddress":
        return DeliveryAddress(**{f: getattr(self, f) for f in DeliveryAddress.model_fields})

class SavedAddress(DeliveryAddress):
    id: Optional[str] = None
    user_id: str
    label: str = "Casa"
    recipient_name: str = ""
    phone: Optional[str] = None
    is_default: bool = False


# ---------------------- Promotions ----------------------

class Coupon(BaseModel):
    code: str
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: float = Field(..., ge=0)
    description: Optional[str] = None
    is_active: bool = True
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    min_order_value: Optional[float] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    used_count: int = 0

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

class Seller(BaseModel):
    name: str
    email: str
    referral_code: str
    status: Literal["pending", "active", "inactive"] = "pending"

class ReferralAttribution(BaseModel):
    code: Optional[str] = None
    verified: bool = False
    display_name: Optional[str] = None

class MarketingTouch(BaseModel):
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    fbclid: Optional[str] = None
    gclid: Optional[str] = None
    landing_page: Optional[str] = None

class MarketingAttribution(BaseModel):
    first_touch: Optional[MarketingTouch] = None
    last_touch: Optional[MarketingTouch] = None

    @property
    def active_touch(self) -> Optional[MarketingTouch]:
        return self.last_touch or self.first_touch


# ---------------------- Shipping & Totals ----------------------

class ShippingQuote(BaseModel):
    id: str
    name: str
    company: str = ""
    service_code: str = ""
    price: float = Field(..., ge=0)
    delivery_min: int = 0
    delivery_max: int = 0

class PriceBreakdown(BaseModel):
    subtotal: float = 0
    coupon_discount: float = 0
    payment_method_discount: float = 0
    shipping_cost: float = 0
    final_total: float = 0

    @property
    def discount(self) -> float:
        return round(self.coupon_discount + self.payment_method_discount, 2)


# ---------------------- Orders & Payments ----------------------

class OrderItem(BaseModel):
    order_id: str
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    variants_detail: List[VariantGroupDetail] = []

class Order(BaseModel):
    user_id: str
    order_number: str
    idempotency_key: Optional[str] = None
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_address: DeliveryAddress
    subtotal: float
    coupon_discount: float = 0
    payment_method_discount: float = 0
    discount: float = 0
    shipping_cost: float = 0
    total: float
    currency: str = "BRL"
    shipping_method_name: Optional[str] = None
    shipping_service_code: Optional[str] = None
    shipping_provider: Optional[str] = None
    shipping_days: Optional[int] = None
    payment_method: PaymentMethod
    payment_status: OrderStatus = "pending"
    payment_provider: Optional[str] = None
    payment_reference: Optional[str] = None
    status: OrderStatus = "pending"
    coupon_code: Optional[str] = None
    coupon_redeemed: bool = False
    referral_code: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    fbclid: Optional[str] = None
    gclid: Optional[str] = None
    landing_page: Optional[str] = None
    tracking_first_touch: Optional[MarketingTouch] = None
    tracking_last_touch: Optional[MarketingTouch] = None

class PaymentAttempt(BaseModel):
    order_id: str
    provider: str
    method: PaymentMethod
    reference: Optional[str] = None
    status: Literal["pending", "paid", "failed", "canceled"] = "pending"
    amount: float = 0
    currency: str = "BRL"
    qr_code: Optional[str] = None
    qr_code_image_url: Optional[str] = None
    boleto_url: Optional[str] = None
    checkout_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    redirect: bool = False
