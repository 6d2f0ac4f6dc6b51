import math
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import paginate
from database import create_document, ensure_object_id, now_utc
from errors import NotFound
from schemas import Order, Principal


class OrderStore:
    def __init__(self, database: Database):
        self.collection = database["order"]
        self.database = database

    def insert(self, order: Order) -> dict:
        """Persist a new order. Raises pymongo DuplicateKeyError when the session id is taken."""
        order_id = create_document(self.database, "order", order)
        return self.get(order_id)

    def get(self, order_id) -> dict:
        order = self.collection.find_one({"_id": ensure_object_id(order_id)})
        if not order:
            raise NotFound("Order not found")
        return order

    def find_by_session(self, session_id: str) -> Optional[dict]:
        return self.collection.find_one({"stripe_session_id": session_id})

    def list(self, principal: Principal, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        query = {}
        if not principal.is_admin:
            query["user_id"] = principal.id
        if status:
            query["status"] = status

        page_num, limit_num, skip = paginate(page, limit)
        orders = list(self.collection.find(query).sort("created_at", -1).skip(skip).limit(limit_num))
        total = self.collection.count_documents(query)
        return {
            "count": len(orders),
            "total": total,
            "page": page_num,
            "pages": math.ceil(total / limit_num),
            "orders": orders,
        }

    def transition(self, order_id, expected_status: str, changes: dict) -> Optional[dict]:
        """Apply changes only while the order still has expected_status; None when it moved on."""
        changes = dict(changes, updated_at=now_utc())
        return self.collection.find_one_and_update(
            {"_id": ensure_object_id(order_id), "status": expected_status},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    def delete_in_status(self, order_id, statuses) -> Optional[dict]:
        """Delete the order if its status is one of statuses and return the removed document."""
        return self.collection.find_one_and_delete(
            {"_id": ensure_object_id(order_id), "status": {"$in": list(statuses)}}
        )

    def find_delivered(self, order_id, user_id: str) -> Optional[dict]:
        return self.collection.find_one({
            "_id": ensure_object_id(order_id),
            "user_id": user_id,
            "status": "delivered",
        })

    def claim_item_for_review(self, order_id, index: int) -> bool:
        """Atomically set is_reviewed on one line item; False if it was already set."""
        result = self.collection.update_one(
            {"_id": ensure_object_id(order_id), f"items.{index}.is_reviewed": {"$ne": True}},
            {"$set": {f"items.{index}.is_reviewed": True, "updated_at": now_utc()}},
        )
        return result.modified_count == 1

    def release_review_claim(self, order_id, index: int):
        self.collection.update_one(
            {"_id": ensure_object_id(order_id)},
            {"$set": {f"items.{index}.is_reviewed": False}},
        )
