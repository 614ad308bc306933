"""
Read-side views joining orders, books, payments and users.

Foreign keys are matched by their string form so ObjectId and plain string
references join the same way.
"""

import logging
from typing import Dict, Iterable, List

from pymongo import DESCENDING

from database import collection, get_documents, id_key, normalize_id
from errors import ForbiddenError, NotFoundError
from orders import load_order
from schemas import normalize_email

logger = logging.getLogger(__name__)

ORDER_SORT = [("created_at", DESCENDING), ("_id", DESCENDING)]
PAYMENT_SORT = [("paid_at", DESCENDING), ("_id", DESCENDING)]


def _index(docs: Iterable[dict], field: str = "_id") -> Dict[str, dict]:
    return {id_key(d.get(field)): d for d in docs if d.get(field) is not None}


def _books_for(refs: Iterable) -> Dict[str, dict]:
    ids = {normalize_id(r) for r in refs if r is not None}
    if not ids:
        return {}
    return _index(collection("book").find({"_id": {"$in": list(ids)}}))


def book_summary(book: dict) -> dict:
    return {
        "id": str(book["_id"]),
        "name": book.get("name"),
        "image": book.get("image"),
        "price": book.get("price"),
    }


def customer_order_view(email: str) -> List[dict]:
    """Orders placed by `email`, minus cancelled ones and ones whose book is gone."""
    orders = get_documents(
        "order",
        {"customer_details.email": normalize_email(email), "order_status": {"$ne": "cancelled"}},
        sort=ORDER_SORT,
    )
    books = _books_for(o.get("book_id") for o in orders)
    result = []
    for order in orders:
        book = books.get(id_key(order.get("book_id")))
        if book is None:
            continue
        result.append({**order, "book_details": book})
    return result


def librarian_order_view(email: str) -> List[dict]:
    orders = get_documents("order", {"librarian_details.email": normalize_email(email)}, sort=ORDER_SORT)
    books = _books_for(o.get("book_id") for o in orders)
    result = []
    for order in orders:
        order = {**order, "book_id": normalize_id(order.get("book_id"))}
        order["book_details"] = books.get(id_key(order["book_id"]))
        result.append(order)
    return result


def single_order_view(order_id) -> dict:
    order = load_order(order_id)
    books = _books_for([order.get("book_id")])
    book = books.get(id_key(order.get("book_id")))
    if book is None:
        raise NotFoundError("Book for this order no longer exists")
    return {**order, "book": book_summary(book)}


def customer_payment_view(email: str) -> List[dict]:
    """Payments made by `email` with the order and book they paid for."""
    payments = get_documents("payment", {"customer.email": normalize_email(email)}, sort=PAYMENT_SORT)
    order_ids = {normalize_id(p.get("order_id")) for p in payments}
    orders = _index(collection("order").find({"_id": {"$in": list(order_ids)}})) if order_ids else {}

    book_refs = []
    for p in payments:
        order = orders.get(id_key(p.get("order_id")))
        book_refs.append(order.get("book_id") if order else (p.get("product") or {}).get("book_id"))
    books = _books_for(book_refs)

    result = []
    for payment, book_ref in zip(payments, book_refs):
        order = orders.get(id_key(payment.get("order_id")))
        result.append({**payment, "order": order, "book": books.get(id_key(book_ref))})
    return result


# ------------------------- Admin ledger -----------------------
def require_admin(requester: dict) -> None:
    if not requester or requester.get("role") != "admin":
        logger.warning("Admin access denied for %s", (requester or {}).get("email"))
        raise ForbiddenError("Admin access required")


def _librarian_summary(book: dict, users_by_email: Dict[str, dict]) -> dict:
    librarian = book.get("librarian") or {}
    summary = {
        "email": librarian.get("email"),
        "name": librarian.get("name"),
        "image": librarian.get("image") or librarian.get("photo"),
        "id": None,
        "role": None,
    }
    user = users_by_email.get(normalize_email(librarian.get("email")))
    if user:
        summary["id"] = str(user["_id"])
        summary["role"] = user.get("role")
        summary["name"] = summary["name"] or user.get("name")
    return summary


def _public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "password_hash"}


def admin_transaction_ledger(requester: dict) -> dict:
    """Every payment with its order, book, librarian and customer attached.

    The role check runs before anything is read from the store. Missing links
    are reported as None rather than dropping the row.
    """
    require_admin(requester)

    payments = get_documents("payment", sort=PAYMENT_SORT)
    orders = _index(get_documents("order"))
    books = _index(get_documents("book"))
    users = get_documents("user")
    users_by_id = _index(users)
    users_by_email = {normalize_email(u["email"]): u for u in users if u.get("email")}

    rows = []
    totals: Dict[str, float] = {}
    for payment in payments:
        order = orders.get(id_key(payment.get("order_id")))
        book_ref = order.get("book_id") if order else (payment.get("product") or {}).get("book_id")
        book = books.get(id_key(book_ref))
        librarian = _librarian_summary(book, users_by_email) if book else None

        customer = None
        if order:
            customer = users_by_id.get(id_key(order.get("user_id")))
        if customer is None:
            customer = users_by_email.get(normalize_email((payment.get("customer") or {}).get("email")))

        rows.append({
            "payment": payment,
            "order": order,
            "book": book,
            "librarian": librarian,
            "customer": _public_user(customer) if customer else None,
        })
        currency = payment.get("currency") or "unknown"
        totals[currency] = round(totals.get(currency, 0.0) + float(payment.get("amount") or 0), 2)

    logger.info("Ledger built for %s: %d payments", requester.get("email"), len(rows))
    return {"transactions": rows, "summary": {"count": len(rows), "totals": totals}}
