import logging
from typing import List, Optional

from pymongo import DESCENDING

from database import collection, create_document, get_document_by_id, get_documents, parse_object_id, update_document
from errors import NotFoundError, ValidationError
from orders import on_book_deleted
from schemas import Book, BookCreate, BookUpdate

logger = logging.getLogger(__name__)


def create_book(payload: BookCreate, librarian: dict):
    book = Book(
        **payload.model_dump(),
        librarian={
            "email": librarian.get("email"),
            "name": librarian.get("name") or "Unknown",
            "image": librarian.get("photo"),
        },
    )
    book_id = create_document("book", book)
    logger.info("Book %s added by %s", book_id, librarian.get("email"))
    return get_document_by_id("book", book_id)


def list_books(status: Optional[str] = "publish") -> List[dict]:
    filt = {"status": status} if status else {}
    return get_documents("book", filt, sort=[("created_at", DESCENDING)])


def get_book(book_id) -> dict:
    book = get_document_by_id("book", book_id, label="book")
    if not book:
        raise NotFoundError("Book not found")
    return book


def update_book(book_id, payload: BookUpdate) -> dict:
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No fields to update")
    if not update_document("book", book_id, changes):
        raise NotFoundError("Book not found")
    return get_book(book_id)


def delete_book(book_id) -> int:
    """Delete a book and every order that references it.

    Returns the number of orders removed. Orders are cascaded even when the book
    itself is already gone, so a retried delete cleans up leftovers.
    """
    oid = parse_object_id(book_id, "book")
    res = collection("book").delete_one({"_id": oid})
    removed = on_book_deleted(oid)
    if res.deleted_count == 0 and removed == 0:
        raise NotFoundError("Book not found")
    logger.info("Book %s deleted (%d orders cascaded)", oid, removed)
    return removed
