"""
Database helpers

Connects to MongoDB when DATABASE_URL and DATABASE_NAME are set. Each
collection is named after the lowercase schema class (user, product, order).
"""
import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import ValidationFailed

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_object_id(id_str: Union[str, ObjectId]) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationFailed("Invalid id format")


def new_id() -> str:
    return str(ObjectId())


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude_none=True)
    else:
        data_dict = dict(data)
    stamp = now_utc()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Database):
    database["user"].create_index([("email", ASCENDING)], unique=True)
    # sparse: orders placed without the processor carry no session id
    database["order"].create_index([("stripe_session_id", ASCENDING)], unique=True, sparse=True)
    database["order"].create_index([("user_id", ASCENDING)])


def serialize_doc(doc):
    """Turn a Mongo document into JSON-ready data: _id becomes id, datetimes become ISO strings."""
    if doc is None:
        return doc
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if not isinstance(doc, dict):
        if isinstance(doc, ObjectId):
            return str(doc)
        if isinstance(doc, datetime):
            return doc.isoformat()
        return doc
    out = {}
    for k, v in doc.items():
        if k == "password_hash":
            continue
        out[k] = serialize_doc(v)
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out
