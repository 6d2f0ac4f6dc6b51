"""
Error taxonomy for the storefront workflows.

Workflows raise these; main.py turns them into JSON responses with the
matching status code.
"""
from typing import Optional


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(StoreError):
    status_code = 400


class NotFound(StoreError):
    status_code = 404


class Forbidden(StoreError):
    status_code = 403


class InsufficientStock(StoreError):
    status_code = 400

    def __init__(self, product_id: str, product_name: str, available: int):
        super().__init__(f"Insufficient stock for {product_name}. Available: {available}")
        self.product_id = product_id
        self.product_name = product_name
        self.available = available


class AlreadyReviewed(StoreError):
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "You have already reviewed this item")


class InvalidState(StoreError):
    status_code = 400


class PaymentIncomplete(StoreError):
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Payment not completed yet")


class ProcessorUnavailable(StoreError):
    status_code = 503

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Stripe is not configured. Please set STRIPE_SECRET_KEY.")
