"""
Checkout through Stripe hosted sessions.

No order exists while a session is open. The order is created when the
session is confirmed, exactly once per session id.
"""
import json
import logging
import os
from typing import Callable, List, Optional, Sequence, Tuple

import stripe
from pydantic import BaseModel, ValidationError
from pymongo.errors import DuplicateKeyError

from catalog import Catalog
from errors import Forbidden, NotFound, PaymentIncomplete, ProcessorUnavailable, ValidationFailed
from notifications import CHECKOUT_CURRENCY, Notifier
from order_store import OrderStore
from orders import require_order_input, run_now, snapshot_items, stock_lines
from schemas import CartItem, Order, Principal, ShippingAddress

logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")


class SessionMetadata(BaseModel):
    user_id: str
    items: List[CartItem]
    shipping_address: ShippingAddress


class StripeProcessor:
    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else os.getenv("STRIPE_SECRET_KEY")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def create_checkout_session(self, line_items: list, success_url: str, cancel_url: str,
                                metadata: dict, customer_email: Optional[str] = None) -> dict:
        params = dict(
            mode="payment",
            payment_method_types=["card"],
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        if customer_email:
            params["customer_email"] = customer_email
        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        return {"id": session.id, "url": session.url}

    def retrieve_session(self, session_id: str) -> Optional[dict]:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            return None

        try:
            order_data = session.metadata["order_data"]
        except (KeyError, TypeError):
            order_data = None
        details = getattr(session, "customer_details", None)
        return {
            "id": session.id,
            "payment_status": session.payment_status,
            "order_data": order_data,
            "customer_email": session.customer_email or (details.email if details else None),
            "customer_name": details.name if details else None,
        }


def parse_metadata(raw: Optional[str]) -> Optional[SessionMetadata]:
    if not raw:
        return None
    try:
        return SessionMetadata.model_validate(json.loads(raw))
    except (ValueError, ValidationError):
        logger.exception("Failed to parse order metadata")
        return None


class CheckoutWorkflow:
    def __init__(self, catalog: Catalog, orders: OrderStore, processor: StripeProcessor, notifier: Notifier,
                 dispatch: Callable = run_now):
        self.catalog = catalog
        self.orders = orders
        self.processor = processor
        self.notifier = notifier
        self.dispatch = dispatch

    def create_session(self, principal: Principal, items: Sequence[CartItem],
                       shipping_address: Optional[ShippingAddress]) -> dict:
        if not self.processor.configured:
            raise ProcessorUnavailable()
        require_order_input(items, shipping_address)

        # validation only, stock is reserved on confirmation
        order_items, _ = snapshot_items(self.catalog, items)
        line_items = [
            {
                "price_data": {
                    "currency": CHECKOUT_CURRENCY,
                    "unit_amount": int(round(item.price * 100)),
                    "product_data": {"name": item.product_name},
                },
                "quantity": item.quantity,
            }
            for item in order_items
        ]
        metadata = SessionMetadata(user_id=principal.id, items=list(items), shipping_address=shipping_address)

        session = self.processor.create_checkout_session(
            line_items,
            success_url=f"{FRONTEND_URL}/checkout-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{FRONTEND_URL}/checkout-cancelled",
            metadata={"order_data": metadata.model_dump_json()},
            customer_email=principal.email or None,
        )
        logger.info("Checkout session %s created for user %s", session["id"], principal.id)
        return {"url": session["url"], "session_id": session["id"]}

    def confirm_session(self, principal: Principal, session_id: Optional[str]) -> Tuple[dict, bool]:
        """Turn a paid session into an order. Returns (order, created)."""
        if not self.processor.configured:
            raise ProcessorUnavailable()
        if not session_id:
            raise ValidationFailed("sessionId is required")

        session = self.processor.retrieve_session(session_id)
        if not session:
            raise NotFound("Checkout session not found")
        if session["payment_status"] != "paid":
            raise PaymentIncomplete()

        metadata = parse_metadata(session.get("order_data"))
        if metadata is None:
            raise ValidationFailed("Missing order metadata")
        if metadata.user_id != principal.id and not principal.is_admin:
            raise Forbidden("Not authorized to confirm this payment")

        existing = self.orders.find_by_session(session["id"])
        if existing:
            return existing, False

        order_items, total = snapshot_items(self.catalog, metadata.items)
        lines = stock_lines(order_items)
        self.catalog.reserve(lines)
        try:
            order = self.orders.insert(Order(
                user_id=metadata.user_id,
                items=order_items,
                total_amount=total,
                status="processing",
                payment_status="paid",
                payment_method="stripe",
                shipping_address=metadata.shipping_address,
                stripe_session_id=session["id"],
            ))
        except DuplicateKeyError:
            self.catalog.release(lines)
            logger.warning("Session %s was confirmed concurrently, returning the existing order", session["id"])
            return self.orders.find_by_session(session["id"]), False
        except Exception:
            self.catalog.release(lines)
            raise

        logger.info("Checkout session %s confirmed as order %s", session["id"], order["_id"])
        recipient = session.get("customer_email") or principal.email
        if recipient:
            customer = {"email": recipient, "name": session.get("customer_name") or principal.name or recipient}
            self.dispatch(self.notifier.send_receipt, recipient, order, customer)
        return order, True
