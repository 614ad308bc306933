"""
Order lifecycle: placement, status updates, cancellation and the cascade that
runs when a book is removed from the catalog.
"""

import logging
from typing import Optional

import pydantic

import database
from database import collection, create_document, normalize_id, id_variants, parse_object_id, utcnow
from errors import NotFoundError, ValidationError
from schemas import ORDER_STATUSES, LibrarianDetails, Order

logger = logging.getLogger(__name__)


def _default_librarian(book_id) -> dict:
    book = collection("book").find_one({"_id": {"$in": id_variants(book_id)}})
    librarian = (book or {}).get("librarian") or {}
    return LibrarianDetails(
        email=librarian.get("email"),
        name=librarian.get("name") or "Unknown",
        photo=librarian.get("image") or librarian.get("photo"),
    ).model_dump()


def place_order(book_id, user_id, customer_details: Optional[dict], librarian_details: Optional[dict] = None):
    """Insert a pending, unpaid order and return its ObjectId."""
    missing = [name for name, value in (("book_id", book_id), ("user_id", user_id), ("customer_details", customer_details)) if not value]
    if not missing and not customer_details.get("email"):
        missing.append("customer_details.email")
    if missing:
        raise ValidationError("Missing required order fields", extra=missing)

    if librarian_details is None:
        librarian_details = _default_librarian(book_id)

    try:
        order = Order(
            book_id=str(book_id),
            user_id=str(user_id),
            librarian_details=librarian_details,
            customer_details=customer_details,
        )
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid order", extra=e.errors(include_url=False, include_context=False))

    data = order.model_dump()
    data["book_id"] = normalize_id(book_id)
    data["user_id"] = normalize_id(user_id)
    data["order_date"] = utcnow()

    order_id = create_document("order", data)
    logger.info("Order %s placed for book %s by %s", order_id, book_id, data["customer_details"]["email"])
    return order_id


def load_order(order_id) -> dict:
    order = database.get_document_by_id("order", order_id, label="order")
    if not order:
        raise NotFoundError("Order not found")
    return order


def update_order_status(order_id, status: str) -> dict:
    oid = parse_object_id(order_id, "order")
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status {status!r}", extra=list(ORDER_STATUSES))
    res = collection("order").update_one(
        {"_id": oid},
        {"$set": {"order_status": status, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFoundError("Order not found")
    logger.info("Order %s status set to %s", oid, status)
    return collection("order").find_one({"_id": oid})


def cancel_order(order_id) -> None:
    oid = parse_object_id(order_id, "order")
    res = collection("order").delete_one({"_id": oid})
    if res.deleted_count == 0:
        raise NotFoundError("Order not found")
    logger.info("Order %s cancelled", oid)


def on_book_deleted(book_id) -> int:
    """Remove every order that references `book_id` in either stored form."""
    variants = id_variants(book_id)
    if not variants:
        return 0
    res = collection("order").delete_many({"book_id": {"$in": variants}})
    if res.deleted_count:
        logger.info("Cascade removed %d orders for book %s", res.deleted_count, book_id)
    return res.deleted_count
