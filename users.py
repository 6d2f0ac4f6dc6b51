import hashlib
import hmac
import math
import os
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import paginate
from database import create_document, ensure_object_id
from errors import NotFound, ValidationFailed
from schemas import Principal, User

PBKDF2_ROUNDS = 120_000


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ROUNDS)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash or "$" not in password_hash:
        return False
    salt_hex, _ = password_hash.split("$", 1)
    return hmac.compare_digest(hash_password(password, bytes.fromhex(salt_hex)), password_hash)


def to_principal(user: dict) -> Principal:
    return Principal(
        id=str(user["_id"]),
        email=user.get("email", ""),
        name=user.get("name", ""),
        is_admin=user.get("is_admin", False) is True,
    )


class UserDirectory:
    def __init__(self, database: Database):
        self.collection = database["user"]
        self.database = database

    def find(self, user_id) -> Optional[dict]:
        return self.collection.find_one({"_id": ensure_object_id(user_id)})

    def get(self, user_id) -> dict:
        user = self.find(user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def find_by_email(self, email: str) -> Optional[dict]:
        return self.collection.find_one({"email": email.lower()})

    def signup(self, name: str, email: str, password: str) -> dict:
        if len(password) < 6:
            raise ValidationFailed("Password must be at least 6 characters")
        if self.find_by_email(email):
            raise ValidationFailed("Email already registered")
        user = User(name=name, email=email.lower(), password_hash=hash_password(password))
        try:
            user_id = create_document(self.database, "user", user)
        except DuplicateKeyError:
            raise ValidationFailed("Email already registered")
        return self.get(user_id)

    def authenticate(self, email: str, password: str) -> Optional[dict]:
        user = self.find_by_email(email)
        if not user or user.get("is_social") or not verify_password(password, user.get("password_hash")):
            return None
        return user

    def update(self, user_id, changes: dict) -> dict:
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self.get(user_id)
        if "email" in changes:
            changes["email"] = changes["email"].lower()
        try:
            user = self.collection.find_one_and_update(
                {"_id": ensure_object_id(user_id)}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise ValidationFailed("Email already registered")
        if not user:
            raise NotFound("User not found")
        return user

    def delete(self, principal: Principal, user_id):
        if str(user_id) == principal.id:
            raise ValidationFailed("Cannot delete your own account")
        result = self.collection.delete_one({"_id": ensure_object_id(user_id)})
        if result.deleted_count == 0:
            raise NotFound("User not found")

    def list(self, search: str = "", page: int = 1, limit: int = 10) -> dict:
        query = {}
        if search:
            query["$or"] = [
                {"name": {"$regex": search, "$options": "i"}},
                {"email": {"$regex": search, "$options": "i"}},
            ]
        page_num, limit_num, skip = paginate(page, limit)
        users = list(self.collection.find(query).sort("created_at", -1).skip(skip).limit(limit_num))
        total = self.collection.count_documents(query)
        return {
            "count": len(users),
            "total": total,
            "page": page_num,
            "pages": math.ceil(total / limit_num),
            "users": users,
        }
