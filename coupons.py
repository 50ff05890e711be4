"""
Coupon validation.

Checks run in a fixed order (existence/activity, minimum order, usage cap)
and the first failing check decides the rejection reason. Validation is
read-only; the usage counter is only incremented by order placement.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Literal, Optional, Union

from pydantic import BaseModel

from database import now_utc
from pricing import coupon_amount
from schemas import Coupon

if TYPE_CHECKING:
    from checkout import CheckoutSession
    from stores import CouponStore

logger = logging.getLogger(__name__)


class RejectionReason(str, Enum):
    INVALID_CODE = "InvalidCode"
    BELOW_MINIMUM = "BelowMinimum"
    EXHAUSTED = "Exhausted"


class CouponApplied(BaseModel):
    code: str
    discount_type: Literal["percentage", "fixed"]
    discount_value: float
    discount_amount: float

class CouponRejected(BaseModel):
    code: str
    reason: RejectionReason
    message: str


CouponResult = Union[CouponApplied, CouponRejected]


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_within_window(coupon: Coupon, at: datetime) -> bool:
    starts_at, expires_at = _aware(coupon.starts_at), _aware(coupon.expires_at)
    if starts_at and at < starts_at:
        return False
    if expires_at and at >= expires_at:
        return False
    return True


class CouponValidator:
    def __init__(self, store: "CouponStore"):
        self.store = store

    def validate(self, code: str, subtotal: float, at: Optional[datetime] = None) -> CouponResult:
        normalized = (code or "").strip().upper()
        if not normalized:
            return CouponRejected(code=normalized, reason=RejectionReason.INVALID_CODE, message="Invalid coupon")

        coupon = self.store.find_by_code(normalized)
        if coupon is None or not coupon.is_active or not is_within_window(coupon, at or now_utc()):
            return CouponRejected(code=normalized, reason=RejectionReason.INVALID_CODE, message="Invalid coupon")
        if coupon.min_order_value and subtotal < coupon.min_order_value:
            return CouponRejected(
                code=normalized,
                reason=RejectionReason.BELOW_MINIMUM,
                message=f"Minimum order of {coupon.min_order_value:.2f}",
            )
        if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
            return CouponRejected(code=normalized, reason=RejectionReason.EXHAUSTED, message="Coupon exhausted")

        return CouponApplied(
            code=coupon.code,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            discount_amount=coupon_amount(coupon.discount_type, coupon.discount_value, subtotal),
        )

    def apply(self, session: "CheckoutSession", code: str) -> CouponResult:
        """Validate and lock a coupon on the session. A locked coupon makes this a no-op."""
        if session.coupon is not None:
            return session.coupon
        result = self.validate(code, session.cart.subtotal)
        if isinstance(result, CouponApplied):
            session.coupon = result
            logger.info("Coupon %s locked on session %s", result.code, session.id)
        return result

    def remove(self, session: "CheckoutSession") -> None:
        session.coupon = None
