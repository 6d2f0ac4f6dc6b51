import logging
from typing import Optional

from catalog import Catalog
from database import new_id, now_utc
from errors import AlreadyReviewed, Forbidden, NotFound, ValidationFailed
from notifications import CommentFilter
from order_store import OrderStore
from schemas import Principal

logger = logging.getLogger(__name__)


def validate_review_input(rating, comment: Optional[str]) -> str:
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationFailed("Rating must be between 1 and 5")
    if not comment or not comment.strip():
        raise ValidationFailed("Comment is required")
    return comment.strip()


class ReviewWorkflow:
    def __init__(self, catalog: Catalog, orders: OrderStore, comment_filter: CommentFilter):
        self.catalog = catalog
        self.orders = orders
        self.comment_filter = comment_filter

    def create_review(self, principal: Principal, product_id: str, order_id: str, item_id: str,
                      rating: int, comment: str) -> dict:
        comment = validate_review_input(rating, comment)
        product = self.catalog.get(product_id)

        order = self.orders.find_delivered(order_id, principal.id)
        if not order:
            raise NotFound("Delivered order not found or you are not the owner")

        index = next((i for i, item in enumerate(order["items"]) if item["id"] == item_id), None)
        if index is None or order["items"][index]["product_id"] != str(product["_id"]):
            raise NotFound("Item not found in this order")
        if order["items"][index].get("is_reviewed"):
            raise AlreadyReviewed()

        # claim first so a concurrent request for the same item loses
        if not self.orders.claim_item_for_review(order["_id"], index):
            raise AlreadyReviewed()

        review = {
            "id": new_id(),
            "user_id": principal.id,
            "user_name": principal.name,
            "rating": rating,
            "comment": self.comment_filter.clean(comment),
            "created_at": now_utc(),
        }
        try:
            updated = self.catalog.add_review(product["_id"], review)
        except Exception:
            self.orders.release_review_claim(order["_id"], index)
            raise

        logger.info("Review %s added to product %s by user %s", review["id"], product["_id"], principal.id)
        return updated

    def update_review(self, principal: Principal, product_id: str, review_id: str,
                      rating: int, comment: str):
        comment = validate_review_input(rating, comment)
        product = self.catalog.get(product_id)
        review = self.catalog.find_review(product, review_id)
        if review["user_id"] != principal.id:
            raise Forbidden("Not authorized to update this review")

        review = dict(review, rating=rating, comment=self.comment_filter.clean(comment), created_at=now_utc())
        updated = self.catalog.replace_review(product["_id"], review)
        return review, updated

    def delete_review(self, principal: Principal, product_id: str, review_id: str) -> dict:
        product = self.catalog.get(product_id)
        review = self.catalog.find_review(product, review_id)
        if not principal.is_admin and review["user_id"] != principal.id:
            raise Forbidden("Not authorized to delete this review")
        return self.catalog.remove_review(product["_id"], review_id)

    def list_reviews(self, principal: Principal):
        if not principal.is_admin:
            raise Forbidden("Access denied. Admin privileges required.")
        return self.catalog.all_reviews()
