import os
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "storefront")
    ADMIN_KEY: str = "demo-admin-key"
    LOG_LEVEL: str = "INFO"

    CHECKOUT_SESSION_TTL_MINUTES: int = 120

    # Payments
    PAYMENT_PROVIDER: Literal["mock", "stripe"] = "mock"
    STRIPE_SECRET_KEY: str = ""
    FRONTEND_URL: str = "http://localhost:3000"
    CURRENCY: str = "BRL"
    PAYMENT_TIMEOUT_SECONDS: float = 5.0
    PIX_EXPIRATION_MINUTES: int = 30
    BOLETO_DUE_DAYS: int = 3
    INSTANT_TRANSFER_DISCOUNT: float = 0.05

    # Shipping
    FLAT_SHIPPING_RATE: float = 15.0
    SHIPPING_DEFAULT_DAYS: int = 7
    FREE_SHIPPING_MIN_VALUE: float = 0.0
    SHIPPING_MARGIN: float = 0.0
    SHIPPING_MARGIN_TYPE: Literal["fixed", "percentage"] = "fixed"
    EXTRA_PREP_DAYS: int = 0
    DEFAULT_SHIPPING_WEIGHT: float = 0.3
    DEFAULT_SHIPPING_WIDTH: float = 11
    DEFAULT_SHIPPING_HEIGHT: float = 2
    DEFAULT_SHIPPING_LENGTH: float = 16


settings = Settings()
