"""Checkout error taxonomy.

Validation errors are recovered locally and shown to the buyer. A persistence
error is fatal only when it hits the order header; every later step of the
placement is best-effort. Dispatch errors never invalidate an order.
"""
from typing import Optional


class CheckoutError(Exception):
    """Base class for checkout failures."""


class CheckoutValidationError(CheckoutError):
    pass


class TransitionNotAllowed(CheckoutValidationError):
    def __init__(self, current: str, target: str, reason: str):
        self.current = current
        self.target = target
        self.reason = reason
        super().__init__(f"Cannot move from {current} to {target}: {reason}")


class SessionNotFound(CheckoutError):
    pass


class PlacementInProgress(CheckoutError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"An order is already being placed for session {session_id}")


class PersistenceError(CheckoutError):
    def __init__(self, step: str, message: str, cause: Optional[BaseException] = None):
        self.step = step
        self.cause = cause
        super().__init__(f"{step}: {message}")


class DispatchError(CheckoutError):
    """The payment gateway did not produce a payment attempt."""

    def __init__(self, message: str, provider: Optional[str] = None, retryable: bool = True):
        self.provider = provider
        self.retryable = retryable
        super().__init__(message)
