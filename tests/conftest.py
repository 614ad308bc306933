import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
import payments
from errors import NotFoundError


class FakeGateway:
    """In-memory stand-in for the Stripe boundary."""

    def __init__(self):
        self.intents = {}
        self.sessions = {}

    def create_intent(self, amount, currency, metadata):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "intent_id": intent_id,
            "status": "requires_payment_method",
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata),
        }
        return {"client_secret": f"{intent_id}_secret", "intent_id": intent_id}

    def succeed(self, intent_id):
        self.intents[intent_id]["status"] = "succeeded"

    def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise NotFoundError("Payment provider has no such object (retrieve_intent)")
        return dict(self.intents[intent_id])

    def create_checkout_session(self, line_items, success_url, cancel_url, metadata):
        n = len(self.sessions) + 1
        session_id = f"cs_test_{n}"
        item = line_items[0]
        self.sessions[session_id] = {
            "session_id": session_id,
            "payment_intent_id": f"pi_cs_test_{n}",
            "payment_status": "paid",
            "amount_total": item["price_data"]["unit_amount"] * item["quantity"],
            "currency": item["price_data"]["currency"],
            "metadata": dict(metadata),
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        return {"url": f"https://checkout.stripe.test/{session_id}", "session_id": session_id}

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise NotFoundError("Payment provider has no such object (retrieve_session)")
        return dict(self.sessions[session_id])


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["bookcourier_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    return mock_db


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    main.app.dependency_overrides[payments.get_gateway] = lambda: gateway
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email, role="user", name=None):
        user_id = database.create_document("user", {
            "name": name or email.split("@")[0],
            "email": email,
            "password_hash": main.pwd_context.hash("secret123"),
            "role": role,
        })
        return db["user"].find_one({"_id": user_id})
    return _make


@pytest.fixture
def make_book(db):
    def _make(name="X", price=10.0, librarian_email="librarian@example.com"):
        book_id = database.create_document("book", {
            "name": name,
            "author": "Anon",
            "price": price,
            "image": f"https://img.example.com/{name}.png",
            "status": "publish",
            "librarian": {"email": librarian_email, "name": "Libby", "image": None},
        })
        return db["book"].find_one({"_id": book_id})
    return _make


@pytest.fixture
def auth_header():
    def _header(user):
        token = main.create_access_token({"sub": str(user["_id"]), "email": user["email"], "role": user["role"]})
        return {"Authorization": f"Bearer {token}"}
    return _header

