"""
Database Helper Functions

MongoDB helper functions shared by the order, payment and catalog services.
Foreign keys are stored as ObjectId when the value is a valid ObjectId string
and as the raw value otherwise; use `normalize_id` on the way in and
`id_variants` when matching.
"""

from pymongo import MongoClient, ASCENDING
from bson import ObjectId
from datetime import datetime, timezone
import logging
import os
from dotenv import load_dotenv
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel

from errors import InternalError, ValidationError

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def _ensure_db():
    if db is None:
        raise InternalError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")


def collection(name: str):
    _ensure_db()
    return db[name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_indexes():
    """Create the unique indexes the payment guard relies on."""
    _ensure_db()
    db["payment"].create_index([("transaction_id", ASCENDING)], unique=True)
    db["payment"].create_index([("order_id", ASCENDING)], unique=True)
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["order"].create_index([("book_id", ASCENDING)])
    logger.info("Database indexes ensured")


def unique_index_state(collection_name: str, fields: List[str]) -> Dict[str, bool]:
    """For each field, whether a unique single-field index covers it."""
    _ensure_db()
    unique = set()
    for info in db[collection_name].index_information().values():
        keys = info.get("key") or []
        if info.get("unique") and len(keys) == 1:
            unique.add(keys[0][0])
    return {field: field in unique for field in fields}


# ------------------------- Identifiers ------------------------
def parse_object_id(value: Any, label: str = "document") -> ObjectId:
    """Strict conversion for ids that address a document directly."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label} id: {value!r}")
    return ObjectId(value)


def normalize_id(value: Any) -> Any:
    """ObjectId when `value` is a valid ObjectId string, otherwise unchanged."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def id_variants(value: Any) -> List[Any]:
    """Both stored representations of a foreign key, for `$in` matching."""
    if value is None:
        return []
    normalized = normalize_id(value)
    if isinstance(normalized, ObjectId):
        return [normalized, str(normalized)]
    return [value]


def id_key(value: Any) -> Optional[str]:
    """String form used for in-memory joins."""
    if value is None:
        return None
    return str(value)


def serialize_doc(doc):
    """Make a stored document JSON friendly: `_id` -> `id`, ObjectId -> str."""
    if doc is None:
        return None
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = serialize_doc(v)
    return out


# ------------------------- CRUD helpers -----------------------
def create_document(collection_name: str, data: Union[BaseModel, dict]):
    """Insert a single document with timestamp"""
    _ensure_db()

    # Convert Pydantic model to dict if needed
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict['created_at'] = now
    data_dict['updated_at'] = now

    result = db[collection_name].insert_one(data_dict)
    return result.inserted_id


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort: Optional[list] = None):
    """Get documents from collection"""
    _ensure_db()
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document_by_id(collection_name: str, doc_id: Any, label: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Get a single document by id; malformed ids raise ValidationError"""
    _ensure_db()
    oid = parse_object_id(doc_id, label or collection_name)
    return db[collection_name].find_one({"_id": oid})


def update_document(collection_name: str, doc_id: Any, data: dict) -> bool:
    """Update a document by id with $set and updated_at; True when it matched"""
    _ensure_db()
    oid = parse_object_id(doc_id, collection_name)
    data = data.copy()
    data['updated_at'] = utcnow()
    res = db[collection_name].update_one({"_id": oid}, {"$set": data})
    return res.matched_count > 0


def delete_document(collection_name: str, doc_id: Any) -> bool:
    """Delete a document by id"""
    _ensure_db()
    oid = parse_object_id(doc_id, collection_name)
    res = db[collection_name].delete_one({"_id": oid})
    return res.deleted_count > 0
