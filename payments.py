"""
Payment reconciliation.

An order moves from `unpaid` to `paid` exactly once. Intent creation only talks
to the provider; both confirmation entry points (a confirmed payment intent or
a completed checkout session) funnel into `record_payment`, which inserts the
Payment keyed by the provider transaction id if absent and then flips the
order's payment status with a conditional update.
"""

import logging
import os
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

import pydantic
from dotenv import load_dotenv
from pymongo.errors import DuplicateKeyError

from database import collection, id_variants, utcnow
from errors import ConflictError, InternalError, NotFoundError, ValidationError
from gateway import StripeGateway
from orders import load_order
from schemas import Payment, normalize_email

load_dotenv()

logger = logging.getLogger(__name__)

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd").lower()
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173").rstrip("/")

_gateway = None


def get_gateway():
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway


def to_minor_units(price) -> int:
    """Convert a major-unit price to integer cents, rounding half up."""
    return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> float:
    return float(Decimal(int(amount)) / 100)


def _load_book_for(order: dict) -> dict:
    book = collection("book").find_one({"_id": {"$in": id_variants(order.get("book_id"))}})
    if not book:
        raise NotFoundError("Book for this order no longer exists")
    return book


def _chargeable_amount(book: dict) -> int:
    price = book.get("price")
    if price is None or isinstance(price, bool):
        raise ValidationError("Book has no price")
    try:
        amount = to_minor_units(price)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Book has an invalid price: {price!r}")
    if amount <= 0:
        raise ValidationError("Book price must be greater than zero")
    return amount


def _payable_order(order_id):
    """Order, book and amount in minor units for an order that can still be charged."""
    order = load_order(order_id)
    if order.get("payment_status") == "paid":
        logger.warning("Charge requested for already paid order %s", order["_id"])
        raise ConflictError("Order is already paid")
    recorded = collection("payment").find_one({"order_id": str(order["_id"])})
    if recorded:
        # payment stored but the status flip never landed
        _mark_order_paid(order["_id"], recorded["transaction_id"], recorded.get("paid_at"))
        logger.warning("Order %s has payment %s but was unpaid; marked paid", order["_id"], recorded["transaction_id"])
        raise ConflictError("Order is already paid")
    book = _load_book_for(order)
    return order, book, _chargeable_amount(book)


def _metadata(order: dict, book: dict) -> dict:
    customer = order.get("customer_details") or {}
    return {
        "order_id": str(order["_id"]),
        "book_id": str(book["_id"]),
        "customer_email": customer.get("email") or "",
        "customer_name": customer.get("name") or "",
    }


def create_charge_intent(order_id, gateway) -> dict:
    order, book, amount = _payable_order(order_id)
    intent = gateway.create_intent(amount, PAYMENT_CURRENCY, _metadata(order, book))
    logger.info("Created payment intent %s for order %s (%d %s)", intent["intent_id"], order["_id"], amount, PAYMENT_CURRENCY)
    return {
        "client_secret": intent["client_secret"],
        "intent_id": intent["intent_id"],
        "amount": amount,
        "currency": PAYMENT_CURRENCY,
    }


def create_checkout_session(order_id, gateway) -> dict:
    order, book, amount = _payable_order(order_id)
    product_data = {"name": book.get("name") or "Book"}
    if book.get("image"):
        product_data["images"] = [book["image"]]
    line_items = [{
        "price_data": {
            "currency": PAYMENT_CURRENCY,
            "unit_amount": amount,
            "product_data": product_data,
        },
        "quantity": 1,
    }]
    session = gateway.create_checkout_session(
        line_items,
        success_url=f"{CLIENT_URL}/dashboard/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{CLIENT_URL}/dashboard/my-orders",
        metadata=_metadata(order, book),
    )
    logger.info("Created checkout session %s for order %s", session["session_id"], order["_id"])
    return session


def _mark_order_paid(order_oid, transaction_id: str, paid_at) -> bool:
    res = collection("order").update_one(
        {"_id": order_oid, "payment_status": {"$ne": "paid"}},
        {"$set": {
            "payment_status": "paid",
            "transaction_id": transaction_id,
            "paid_at": paid_at,
            "updated_at": utcnow(),
        }},
    )
    return res.modified_count > 0


def record_payment(order: dict, book: dict, transaction_id: str, amount_minor: int, currency: str) -> dict:
    """Insert-if-absent the Payment for `transaction_id`, then mark the order paid.

    Returns a dict with the payment document and `already_recorded`.
    """
    payments = collection("payment")
    existing = payments.find_one({"transaction_id": transaction_id})
    if existing:
        # a previous attempt may have stopped between the insert and the status flip
        _mark_order_paid(order["_id"], transaction_id, existing.get("paid_at"))
        logger.info("Payment %s already recorded for order %s", transaction_id, existing.get("order_id"))
        return {"payment": existing, "already_recorded": True}

    if order.get("payment_status") == "paid":
        logger.warning("Order %s already paid, rejecting transaction %s", order["_id"], transaction_id)
        raise ConflictError("Order is already paid by another transaction")

    customer = order.get("customer_details") or {}
    try:
        payment = Payment(
            order_id=str(order["_id"]),
            transaction_id=transaction_id,
            amount=from_minor_units(amount_minor),
            currency=(currency or PAYMENT_CURRENCY).lower(),
            customer={"email": normalize_email(customer.get("email")), "name": customer.get("name")},
            product={
                "book_id": str(book["_id"]),
                "name": book.get("name"),
                "image": book.get("image"),
                "price": book.get("price"),
            },
        )
    except pydantic.ValidationError as e:
        logger.error("Cannot build payment record for order %s, transaction %s: %s", order["_id"], transaction_id, e)
        raise InternalError(f"Payment {transaction_id} was taken but could not be recorded; stored order or book data is invalid")
    now = utcnow()
    doc = payment.model_dump()
    del doc["transaction_id"]
    doc.update({"paid_at": now, "created_at": now})

    try:
        res = payments.update_one({"transaction_id": transaction_id}, {"$setOnInsert": doc}, upsert=True)
    except DuplicateKeyError:
        existing = payments.find_one({"transaction_id": transaction_id})
        if existing is None:
            raise ConflictError("A payment is already recorded for this order")
        return {"payment": existing, "already_recorded": True}

    if res.upserted_id is None:
        return {"payment": payments.find_one({"transaction_id": transaction_id}), "already_recorded": True}

    _mark_order_paid(order["_id"], transaction_id, now)
    logger.info("Recorded payment %s for order %s: %s %s", transaction_id, order["_id"], doc["amount"], doc["currency"])
    return {"payment": payments.find_one({"_id": res.upserted_id}), "already_recorded": False}


def _result(recorded: dict) -> dict:
    payment = recorded["payment"]
    return {
        "payment": payment,
        "payment_id": payment["_id"],
        "order_id": payment["order_id"],
        "transaction_id": payment["transaction_id"],
        "already_recorded": recorded["already_recorded"],
    }


def confirm_checkout_session(session_id: str, gateway) -> dict:
    if not session_id:
        raise ValidationError("Missing checkout session id")
    session = gateway.retrieve_session(session_id)
    order_id = (session.get("metadata") or {}).get("order_id")
    if not order_id:
        raise ValidationError("Checkout session has no order metadata")
    if session.get("payment_status") not in (None, "paid", "no_payment_required"):
        raise ValidationError(f"Checkout session is not paid ({session.get('payment_status')})")

    order = load_order(order_id)
    book = _load_book_for(order)
    transaction_id = session.get("payment_intent_id") or session["session_id"]
    return _result(record_payment(order, book, transaction_id, session.get("amount_total") or 0, session.get("currency")))


def confirm_charge_direct(order_id, intent_id: Optional[str], gateway) -> dict:
    if not intent_id:
        raise ValidationError("Missing payment intent id")
    order = load_order(order_id)
    intent = gateway.retrieve_intent(intent_id)
    if intent.get("status") != "succeeded":
        raise ValidationError(f"Payment intent has not succeeded ({intent.get('status')})")
    intent_order = (intent.get("metadata") or {}).get("order_id")
    if not intent_order:
        raise ValidationError("Payment intent has no order metadata")
    if intent_order != str(order["_id"]):
        raise ValidationError("Payment intent belongs to a different order")

    book = _load_book_for(order)
    return _result(record_payment(order, book, intent["intent_id"], intent.get("amount") or 0, intent.get("currency")))
