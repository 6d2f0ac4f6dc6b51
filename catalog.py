import logging
import math
from typing import Iterable, List, NamedTuple, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, ensure_object_id, now_utc
from errors import Forbidden, InsufficientStock, NotFound
from schemas import Principal, Product

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
RATING_ATTEMPTS = 5


class StockLine(NamedTuple):
    product_id: str
    product_name: str
    quantity: int


def paginate(page, limit):
    page_num = max(1, int(page or 1))
    limit_num = max(1, min(MAX_PAGE_SIZE, int(limit or 10)))
    return page_num, limit_num, (page_num - 1) * limit_num


def rating_aggregate(reviews: List[dict]):
    """Mean rating and count of a review collection, 0/0 when empty."""
    if not reviews:
        return 0, 0
    return sum(r["rating"] for r in reviews) / len(reviews), len(reviews)


def can_modify(product: dict, principal: Principal) -> bool:
    return principal.is_admin or product.get("created_by") == principal.id


class Catalog:
    def __init__(self, database: Database):
        self.collection = database["product"]
        self.database = database

    def get(self, product_id) -> dict:
        product = self.collection.find_one({"_id": ensure_object_id(product_id)})
        if not product:
            raise NotFound(f"Product with ID {product_id} not found")
        return product

    def list(self, category: Optional[str] = None, search: Optional[str] = None,
             min_price: Optional[float] = None, max_price: Optional[float] = None,
             min_rating: Optional[float] = None, page: int = 1, limit: int = 10) -> dict:
        query = {}
        if category:
            query["category"] = category
        if search:
            query["$or"] = [
                {"name": {"$regex": search, "$options": "i"}},
                {"description": {"$regex": search, "$options": "i"}},
            ]
        if min_price is not None or max_price is not None:
            query["price"] = {}
            if min_price is not None:
                query["price"]["$gte"] = min_price
            if max_price is not None:
                query["price"]["$lte"] = max_price
        if min_rating is not None:
            query["rating"] = {"$gte": min_rating}

        page_num, limit_num, skip = paginate(page, limit)
        products = list(self.collection.find(query).sort("created_at", -1).skip(skip).limit(limit_num))
        total = self.collection.count_documents(query)
        return {
            "count": len(products),
            "total": total,
            "page": page_num,
            "pages": math.ceil(total / limit_num),
            "products": products,
        }

    def create(self, owner: Principal, data: dict) -> dict:
        product = Product(**data, created_by=owner.id)
        product_id = create_document(self.database, "product", product)
        return self.get(product_id)

    def _owned(self, product_id, principal: Principal, action: str) -> dict:
        product = self.get(product_id)
        if not can_modify(product, principal):
            raise Forbidden(f"Not authorized to {action} this product")
        return product

    def update(self, product_id, principal: Principal, changes: dict) -> dict:
        product = self._owned(product_id, principal, "update")
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return product
        changes["updated_at"] = now_utc()
        return self.collection.find_one_and_update(
            {"_id": product["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )

    def delete(self, product_id, principal: Principal):
        product = self._owned(product_id, principal, "delete")
        self.collection.delete_one({"_id": product["_id"]})

    def remove_photo(self, product_id, principal: Principal, photo_url: str) -> dict:
        product = self._owned(product_id, principal, "delete this photo of")
        return self.collection.find_one_and_update(
            {"_id": product["_id"]},
            {"$pull": {"photos": photo_url}, "$set": {"updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )

    # ---------- Stock ----------

    def reserve(self, lines: Iterable[StockLine]):
        """Decrement stock for every line or for none of them.

        Each decrement only applies while the stored stock still covers the
        quantity, so stock never goes negative under concurrent purchases.
        """
        reserved: List[StockLine] = []
        for line in lines:
            result = self.collection.update_one(
                {"_id": ensure_object_id(line.product_id), "stock": {"$gte": line.quantity}},
                {"$inc": {"stock": -line.quantity}},
            )
            if result.modified_count == 1:
                reserved.append(line)
                continue

            logger.warning("Stock reservation failed for product %s, rolling back %d line(s)",
                           line.product_id, len(reserved))
            self.release(reserved)
            current = self.collection.find_one({"_id": ensure_object_id(line.product_id)})
            if not current:
                raise NotFound(f"Product with ID {line.product_id} not found")
            raise InsufficientStock(line.product_id, current.get("name", line.product_name),
                                    current.get("stock", 0))

    def release(self, lines: Iterable[StockLine]):
        for line in lines:
            self.collection.update_one(
                {"_id": ensure_object_id(line.product_id)},
                {"$inc": {"stock": line.quantity}},
            )

    # ---------- Reviews ----------

    def _recompute_rating(self, product_id) -> dict:
        """Store the aggregate against the reviews_version it was computed from."""
        for _ in range(RATING_ATTEMPTS):
            product = self.get(product_id)
            rating, num_reviews = rating_aggregate(product.get("reviews", []))
            updated = self.collection.find_one_and_update(
                {"_id": product["_id"], "reviews_version": product.get("reviews_version", 0)},
                {"$set": {"rating": rating, "num_reviews": num_reviews, "updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                return updated
        # every review write is followed by its own recompute, the last one settles the aggregate
        logger.warning("Rating of product %s kept changing, leaving it to the latest writer", product_id)
        return self.get(product_id)

    def add_review(self, product_id, review: dict) -> dict:
        self.collection.update_one(
            {"_id": ensure_object_id(product_id)},
            {"$push": {"reviews": review}, "$inc": {"reviews_version": 1}},
        )
        return self._recompute_rating(product_id)

    def replace_review(self, product_id, review: dict) -> dict:
        result = self.collection.update_one(
            {"_id": ensure_object_id(product_id), "reviews.id": review["id"]},
            {
                "$set": {
                    "reviews.$.rating": review["rating"],
                    "reviews.$.comment": review["comment"],
                    "reviews.$.created_at": review["created_at"],
                },
                "$inc": {"reviews_version": 1},
            },
        )
        if result.matched_count == 0:
            raise NotFound("Review not found")
        return self._recompute_rating(product_id)

    def remove_review(self, product_id, review_id: str) -> dict:
        self.collection.update_one(
            {"_id": ensure_object_id(product_id)},
            {"$pull": {"reviews": {"id": review_id}}, "$inc": {"reviews_version": 1}},
        )
        return self._recompute_rating(product_id)

    def find_review(self, product: dict, review_id: str) -> dict:
        review = next((r for r in product.get("reviews", []) if r["id"] == review_id), None)
        if not review:
            raise NotFound("Review not found")
        return review

    def all_reviews(self) -> List[dict]:
        rows = []
        for product in self.collection.find({"num_reviews": {"$gt": 0}}):
            for review in product["reviews"]:
                rows.append({
                    **review,
                    "product_id": str(product["_id"]),
                    "product_name": product.get("name"),
                })
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows
