import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from catalog import Catalog, StockLine
from database import new_id
from errors import Forbidden, InsufficientStock, InvalidState, ValidationFailed
from notifications import Notifier
from order_store import OrderStore
from schemas import CartItem, Order, OrderItem, Principal, ShippingAddress
from users import UserDirectory

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("processing", "cancelled"),
    "processing": ("shipped", "cancelled"),
    "shipped": ("delivered",),
    "delivered": (),
    "cancelled": (),
}

DELETABLE_STATUSES = ("pending", "cancelled")


def run_now(fn: Callable, *args):
    fn(*args)


def require_order_input(items: Sequence[CartItem], shipping_address: Optional[ShippingAddress]):
    if not items:
        raise ValidationFailed("Order must contain at least one item")
    if shipping_address is None:
        raise ValidationFailed("Shipping address is required")


def snapshot_items(catalog: Catalog, items: Sequence[CartItem]) -> Tuple[List[OrderItem], float]:
    """Resolve every requested product and check its stock before anything is mutated.

    Name and unit price are copied into the line items so later product edits
    leave the order untouched.
    """
    order_items = []
    total = 0.0
    for item in items:
        product = catalog.get(item.product_id)
        if product.get("stock", 0) < item.quantity:
            raise InsufficientStock(item.product_id, product["name"], product.get("stock", 0))
        price = float(product["price"])
        total += price * item.quantity
        order_items.append(OrderItem(
            id=new_id(),
            product_id=str(product["_id"]),
            product_name=product["name"],
            quantity=item.quantity,
            price=price,
        ))
    return order_items, round(total, 2)


def stock_lines(items) -> List[StockLine]:
    lines = []
    for item in items:
        if isinstance(item, dict):
            lines.append(StockLine(item["product_id"], item["product_name"], item["quantity"]))
        else:
            lines.append(StockLine(item.product_id, item.product_name, item.quantity))
    return lines


def ensure_owner_or_admin(order: dict, principal: Principal, action: str):
    if not principal.is_admin and order["user_id"] != principal.id:
        raise Forbidden(f"Not authorized to {action} this order")


class OrderWorkflow:
    def __init__(self, catalog: Catalog, orders: OrderStore, users: UserDirectory, notifier: Notifier,
                 dispatch: Callable = run_now):
        self.catalog = catalog
        self.orders = orders
        self.users = users
        self.notifier = notifier
        self.dispatch = dispatch

    def place_order(self, principal: Principal, items: Sequence[CartItem],
                    shipping_address: Optional[ShippingAddress],
                    payment_method: Optional[str] = None) -> dict:
        require_order_input(items, shipping_address)
        order_items, total = snapshot_items(self.catalog, items)
        lines = stock_lines(order_items)

        self.catalog.reserve(lines)
        try:
            order = self.orders.insert(Order(
                user_id=principal.id,
                items=order_items,
                total_amount=total,
                status="pending",
                payment_status="pending",
                payment_method=payment_method or "cash_on_delivery",
                shipping_address=shipping_address,
            ))
        except Exception:
            self.catalog.release(lines)
            raise

        logger.info("Order %s placed by user %s for %.2f", order["_id"], principal.id, total)
        return order

    def get_order(self, principal: Principal, order_id) -> dict:
        order = self.orders.get(order_id)
        ensure_owner_or_admin(order, principal, "view")
        return order

    def list_orders(self, principal: Principal, status: Optional[str] = None, page: int = 1, limit: int = 10):
        return self.orders.list(principal, status=status, page=page, limit=limit)

    def update_status(self, principal: Principal, order_id, status: Optional[str] = None,
                      payment_status: Optional[str] = None) -> dict:
        order = self.orders.get(order_id)
        ensure_owner_or_admin(order, principal, "update")

        changes = {}
        if status and status != order["status"]:
            if status not in ORDER_STATUSES:
                raise ValidationFailed(f"Unknown order status: {status}")
            if status not in ALLOWED_TRANSITIONS.get(order["status"], ()):
                raise InvalidState(f"Cannot change order status from {order['status']} to {status}")
            changes["status"] = status
        if payment_status and payment_status != order["payment_status"]:
            if payment_status not in PAYMENT_STATUSES:
                raise ValidationFailed(f"Unknown payment status: {payment_status}")
            changes["payment_status"] = payment_status

        if not changes:
            return order

        cancelling = changes.get("status") == "cancelled"
        if cancelling:
            changes["stock_restored"] = True
        updated = self.orders.transition(order["_id"], order["status"], changes)
        if updated is None:
            current = self.orders.get(order["_id"])
            raise InvalidState(
                f"Order status changed from {order['status']} to {current['status']}, reload and retry"
            )
        # only pending and processing orders can be cancelled, neither has restored stock yet
        if cancelling:
            self.catalog.release(stock_lines(updated["items"]))
            logger.info("Order %s cancelled, stock restored", order["_id"])

        if "status" in changes:
            owner = self.users.find(updated["user_id"])
            if owner and owner.get("email"):
                self.dispatch(self.notifier.order_status_changed, owner["email"], updated)
            else:
                logger.warning("Order %s has no reachable owner, skipping status email", order["_id"])
        return updated

    def delete_order(self, principal: Principal, order_id):
        order = self.orders.get(order_id)
        ensure_owner_or_admin(order, principal, "delete")
        if order["status"] not in DELETABLE_STATUSES:
            raise InvalidState("Cannot delete order that is not pending or cancelled")

        deleted = self.orders.delete_in_status(order["_id"], DELETABLE_STATUSES)
        if deleted is None:
            raise InvalidState("Cannot delete order that is not pending or cancelled")
        if not deleted.get("stock_restored"):
            self.catalog.release(stock_lines(deleted["items"]))
        logger.info("Order %s deleted by user %s", order["_id"], principal.id)
