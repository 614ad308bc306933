import pytest
from bson import ObjectId

import database
import orders
import payments
import views
from errors import ForbiddenError, NotFoundError, ValidationError
from schemas import LibrarianDetails, normalize_email

CUSTOMER = {"email": "reader@example.com", "name": "Reader"}


def _pay(order_id, gateway):
    session = payments.create_checkout_session(str(order_id), gateway)
    return payments.confirm_checkout_session(session["session_id"], gateway)


def test_customer_order_view_skips_cancelled_and_orphaned(db, make_book):
    book = make_book()
    gone = make_book(name="Gone")
    kept = orders.place_order(str(book["_id"]), "u1", CUSTOMER)
    cancelled = orders.place_order(str(book["_id"]), "u1", CUSTOMER)
    orders.update_order_status(str(cancelled), "cancelled")
    orders.place_order(str(gone["_id"]), "u1", CUSTOMER)
    db["book"].delete_one({"_id": gone["_id"]})
    orders.place_order(str(book["_id"]), "u9", {"email": "someone@example.com"})

    result = views.customer_order_view(CUSTOMER["email"])

    assert [o["_id"] for o in result] == [kept]
    assert result[0]["book_details"]["name"] == "X"
    assert all(o["order_status"] != "cancelled" for o in result)


def test_customer_order_view_newest_first(db, make_book):
    book = make_book()
    first = orders.place_order(str(book["_id"]), "u1", CUSTOMER)
    second = orders.place_order(str(book["_id"]), "u1", CUSTOMER)

    result = views.customer_order_view(CUSTOMER["email"])

    assert [o["_id"] for o in result] == [second, first]


def test_customer_order_view_joins_string_book_ids(db, make_book):
    book = make_book()
    db["order"].insert_one({"book_id": str(book["_id"]), "user_id": "u1", "order_status": "pending",
                            "payment_status": "unpaid", "customer_details": CUSTOMER,
                            "created_at": database.utcnow()})

    result = views.customer_order_view(CUSTOMER["email"])

    assert len(result) == 1
    assert result[0]["book_details"]["_id"] == book["_id"]


def test_librarian_order_view_keeps_orders_without_book(db, make_book):
    book = make_book(librarian_email="lib@example.com")
    gone = make_book(name="Gone", librarian_email="lib@example.com")
    orders.place_order(str(book["_id"]), "u1", CUSTOMER)
    db["order"].insert_one({"book_id": str(gone["_id"]), "user_id": "u2", "order_status": "pending",
                            "payment_status": "unpaid", "customer_details": CUSTOMER,
                            "librarian_details": {"email": "lib@example.com", "name": "Libby"},
                            "created_at": database.utcnow()})
    db["book"].delete_one({"_id": gone["_id"]})

    result = views.librarian_order_view("lib@example.com")

    assert len(result) == 2
    by_book = {o["book_id"]: o for o in result}
    assert by_book[book["_id"]]["book_details"]["name"] == "X"
    assert by_book[gone["_id"]]["book_details"] is None
    assert all(isinstance(o["book_id"], ObjectId) for o in result)


def test_single_order_view(db, make_book):
    book = make_book(price=12.5)
    order_id = orders.place_order(str(book["_id"]), "u1", CUSTOMER)

    result = views.single_order_view(str(order_id))

    assert result["_id"] == order_id
    assert result["book"] == {"id": str(book["_id"]), "name": "X", "image": book["image"], "price": 12.5}


def test_single_order_view_errors(db, make_book):
    with pytest.raises(ValidationError):
        views.single_order_view("123")
    with pytest.raises(NotFoundError):
        views.single_order_view(str(ObjectId()))

    book = make_book()
    order_id = orders.place_order(str(book["_id"]), "u1", CUSTOMER)
    db["book"].delete_one({"_id": book["_id"]})
    with pytest.raises(NotFoundError):
        views.single_order_view(str(order_id))


def test_customer_payment_view_follows_order_chain(db, make_book, gateway):
    # two distinct books sharing a title must not be confused
    book = make_book(name="Same", price=5.0)
    twin = make_book(name="Same", price=8.0)
    order_id = orders.place_order(str(book["_id"]), "u1", CUSTOMER)
    orders.place_order(str(twin["_id"]), "u1", CUSTOMER)
    _pay(order_id, gateway)

    result = views.customer_payment_view(CUSTOMER["email"])

    assert len(result) == 1
    assert result[0]["order"]["_id"] == order_id
    assert result[0]["book"]["_id"] == book["_id"]
    assert views.customer_payment_view("nobody@example.com") == []


def test_customer_payment_view_falls_back_to_snapshot_book(db, make_book, gateway):
    book = make_book()
    order_id = orders.place_order(str(book["_id"]), "u1", CUSTOMER)
    _pay(order_id, gateway)
    db["order"].delete_one({"_id": order_id})

    result = views.customer_payment_view(CUSTOMER["email"])

    assert result[0]["order"] is None
    assert result[0]["book"]["_id"] == book["_id"]


def test_ledger_forbidden_before_any_read(monkeypatch):
    # with no store at all, the only way out is the role check
    monkeypatch.setattr(database, "db", None)

    with pytest.raises(ForbiddenError):
        views.admin_transaction_ledger({"email": "reader@example.com", "role": "librarian"})
    with pytest.raises(ForbiddenError):
        views.admin_transaction_ledger(None)


def test_ledger_joins_every_payment(db, make_book, make_user, gateway):
    admin = make_user("boss@example.com", role="admin")
    librarian = make_user("lib@example.com", role="librarian", name="Libby")
    customer = make_user("reader@example.com")
    book = make_book(librarian_email="lib@example.com", price=10.0)
    other = make_book(name="Y", librarian_email="ghost@example.com", price=2.5)

    paid = orders.place_order(str(book["_id"]), str(customer["_id"]), CUSTOMER)
    _pay(paid, gateway)
    orphan = orders.place_order(str(other["_id"]), "unknown-user", CUSTOMER)
    _pay(orphan, gateway)
    db["order"].delete_one({"_id": orphan})
    db["book"].delete_one({"_id": other["_id"]})

    report = views.admin_transaction_ledger(admin)

    assert report["summary"]["count"] == 2
    assert report["summary"]["totals"] == {payments.PAYMENT_CURRENCY: 12.5}
    rows = {row["payment"]["order_id"]: row for row in report["transactions"]}

    full = rows[str(paid)]
    assert full["order"]["_id"] == paid
    assert full["book"]["_id"] == book["_id"]
    assert full["librarian"]["email"] == "lib@example.com"
    assert full["librarian"]["id"] == str(librarian["_id"])
    assert full["librarian"]["role"] == "librarian"
    assert full["customer"]["_id"] == customer["_id"]
    assert "password_hash" not in full["customer"]

    dangling = rows[str(orphan)]
    assert dangling["order"] is None
    assert dangling["book"] is None
    assert dangling["librarian"] is None
    # matched by the payment's customer email instead
    assert dangling["customer"]["email"] == "reader@example.com"


@pytest.mark.parametrize("raw,expected", [
    ("Reader@EXAMPLE.com", "Reader@example.com"),
    ("  a@Example.COM ", "a@example.com"),
    ("no-at-sign", "no-at-sign"),
    (None, None),
])
def test_normalize_email_lowers_domain_only(raw, expected):
    assert normalize_email(raw) == expected


def test_views_match_email_regardless_of_domain_case(db, make_book, make_user, gateway):
    book = make_book(librarian_email="Lib@Example.COM")
    make_user("Lib@EXAMPLE.com", role="librarian")
    order_id = orders.place_order(str(book["_id"]), "u1", {"email": "reader@Example.COM", "name": "Reader"})
    _pay(order_id, gateway)

    assert [o["_id"] for o in views.customer_order_view("reader@example.com")] == [order_id]
    assert [o["_id"] for o in views.customer_order_view("reader@EXAMPLE.COM")] == [order_id]
    assert [o["_id"] for o in views.librarian_order_view("Lib@example.com")] == [order_id]
    assert len(views.customer_payment_view("reader@eXample.com")) == 1

    admin = make_user("admin@example.com", role="admin")
    row = views.admin_transaction_ledger(admin)["transactions"][0]
    assert row["librarian"]["role"] == "librarian"


def test_librarian_details_store_lower_case_domain():
    assert LibrarianDetails(email="a@Example.COM", name="A").email == "a@example.com"
