"""
Database helpers for ShopSmart.

Holds the MongoDB connection and the generic document helpers the ledger,
inventory and payment modules persist through. Every read and write is
filtered by the owning shop (``user``); a document owned by another shop
behaves exactly like a missing one.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

import structlog
from bson.errors import InvalidId
from bson.objectid import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from clock import now_utc, to_mongo
from errors import ConcurrencyConflict, DuplicateRecord, InvalidOperation, NotFound
from schemas import Customer, Document, LedgerTransaction, PaymentSchedule, Product, Sale
from settings import get_settings

logger = structlog.get_logger()

D = TypeVar("D", bound=Document)

COLLECTIONS: Dict[Type[Document], str] = {
    Customer: "customer",
    Product: "product",
    PaymentSchedule: "payment_schedule",
    LedgerTransaction: "ledger_transaction",
    Sale: "sale",
}

_settings = get_settings()

db: Optional[Database] = None
if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url, tz_aware=True)
    db = client[_settings.database_name]


def ensure_indexes(database: Database) -> None:
    database["customer"].create_index([("user", ASCENDING), ("phone", ASCENDING)], unique=True)
    database["customer"].create_index([("user", ASCENDING), ("current_balance", DESCENDING)])
    database["customer"].create_index([("user", ASCENDING), ("status", ASCENDING)])
    database["product"].create_index([("sku", ASCENDING)], unique=True, sparse=True)
    database["product"].create_index([("user", ASCENDING), ("barcode", ASCENDING)])
    database["product"].create_index([("user", ASCENDING), ("stock_status", ASCENDING)])
    database["product"].create_index([("user", ASCENDING), ("nearest_expiry", ASCENDING)])
    database["payment_schedule"].create_index([("user", ASCENDING), ("customer", ASCENDING)])
    database["payment_schedule"].create_index([("user", ASCENDING), ("due_date", ASCENDING)])
    database["payment_schedule"].create_index([("user", ASCENDING), ("status", ASCENDING)])
    database["ledger_transaction"].create_index([("user", ASCENDING), ("transaction_date", DESCENDING)])
    database["ledger_transaction"].create_index([("customer", ASCENDING), ("transaction_date", DESCENDING)])


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidOperation("Invalid ID", id=id_str)


def collection_name(model_cls: Type[Document]) -> str:
    return COLLECTIONS[model_cls]


def to_document(model: Document) -> Dict[str, Any]:
    # Absent rather than null, so sparse indexes skip unset optional keys
    data = model.model_dump(exclude={"id"}, exclude_none=True)
    return _mongo_dates(data)


def from_document(model_cls: Type[D], doc: Dict[str, Any]) -> D:
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return model_cls.model_validate(d)


def _mongo_dates(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _mongo_dates(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_mongo_dates(v) for v in value]
    if isinstance(value, datetime):
        return to_mongo(value)
    return value


def mongo_filter(filt: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize datetimes inside a query filter."""
    return _mongo_dates(filt)


def insert(database: Database, model: D, now: Optional[datetime] = None) -> D:
    now = now or now_utc()
    model.created_at = now
    model.updated_at = now
    model.version = 1
    name = collection_name(type(model))
    try:
        res = database[name].insert_one(to_document(model))
    except DuplicateKeyError as e:
        raise DuplicateRecord(f"Duplicate {name}", details=str(e))
    model.id = str(res.inserted_id)
    logger.info("document_inserted", collection=name, id=model.id, user=model.user)
    return model


def save(database: Database, model: D, now: Optional[datetime] = None) -> D:
    """Replace the stored document if nobody has written it since it was read."""
    if model.id is None:
        return insert(database, model, now)
    name = collection_name(type(model))
    expected = model.version
    model.updated_at = now or now_utc()
    model.version = expected + 1
    try:
        res = database[name].replace_one(
            {"_id": oid(model.id), "user": model.user, "version": expected},
            to_document(model),
        )
    except DuplicateKeyError as e:
        model.version = expected
        raise DuplicateRecord(f"Duplicate {name}", details=str(e))
    if res.matched_count == 0:
        model.version = expected
        if database[name].count_documents({"_id": oid(model.id), "user": model.user}) == 0:
            raise NotFound(f"{name} not found", id=model.id)
        logger.warning("stale_write_rejected", collection=name, id=model.id, version=expected)
        raise ConcurrencyConflict(f"{name} was modified concurrently", id=model.id)
    return model


def get(database: Database, model_cls: Type[D], user: str, id_str: str) -> D:
    doc = database[collection_name(model_cls)].find_one({"_id": oid(id_str), "user": user})
    if not doc:
        raise NotFound(f"{model_cls.__name__} not found", id=id_str)
    return from_document(model_cls, doc)


def find(
    database: Database,
    model_cls: Type[D],
    filt: Dict[str, Any],
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[D]:
    cur = database[collection_name(model_cls)].find(mongo_filter(filt))
    if sort:
        cur = cur.sort(sort)
    if limit:
        cur = cur.limit(limit)
    return [from_document(model_cls, doc) for doc in cur]


def delete(database: Database, model_cls: Type[Document], user: str, id_str: str) -> None:
    res = database[collection_name(model_cls)].delete_one({"_id": oid(id_str), "user": user})
    if res.deleted_count == 0:
        raise NotFound(f"{model_cls.__name__} not found", id=id_str)
