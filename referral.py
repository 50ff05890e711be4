from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from schemas import ReferralAttribution

if TYPE_CHECKING:
    from checkout import CheckoutSession
    from stores import SellerRegistry

logger = logging.getLogger(__name__)


class ReferralVerifier:
    """Resolves seller referral codes. An unknown or inactive code is never an error."""

    def __init__(self, registry: "SellerRegistry"):
        self.registry = registry

    def verify(self, code: str) -> ReferralAttribution:
        cleaned = (code or "").strip()
        if not cleaned:
            return ReferralAttribution()
        try:
            seller = self.registry.find_active(cleaned)
        except Exception as e:
            logger.warning("Referral lookup for %s failed: %s", cleaned, e)
            seller = None
        if seller is None:
            return ReferralAttribution(code=cleaned, verified=False)
        return ReferralAttribution(code=seller.referral_code, verified=True, display_name=seller.name)

    def reverify(self, session: "CheckoutSession", code: str) -> ReferralAttribution:
        session.referral = ReferralAttribution()
        session.referral = self.verify(code)
        return session.referral
