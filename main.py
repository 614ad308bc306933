import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from passlib.context import CryptContext
from jose import JWTError, jwt
from pymongo.errors import DuplicateKeyError, PyMongoError

import catalog
import database
import orders
import payments
import views
from database import collection, create_document, get_document_by_id, serialize_doc
from errors import InternalError, NotFoundError, ServiceError
from schemas import (
    BookCreate,
    BookUpdate,
    IntentConfirm,
    LoginRequest,
    OrderCreate,
    OrderStatusUpdate,
    RegisterRequest,
    RoleUpdate,
    User,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Security settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))
# Use pbkdf2_sha256 to avoid bcrypt backend issues in some environments
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
security = HTTPBearer()

app = FastAPI(title="BookCourier API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------- Error Handlers ---------------------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "detail": "Invalid request", "errors": errors},
    )


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=InternalError("Database error").to_dict())


# ------------------------- Auth Models -------------------------
class UserProfile(BaseModel):
    id: str
    name: str
    email: str
    role: str
    photo: Optional[str] = None


class LoginResponse(BaseModel):
    token: str
    profile: UserProfile


# ------------------------- Helpers ----------------------------
def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _profile(user: dict) -> UserProfile:
    return UserProfile(
        id=str(user["_id"]),
        name=user.get("name", ""),
        email=user.get("email", ""),
        role=user.get("role", "user"),
        photo=user.get("photo"),
    )


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """Resolve the bearer token to the stored user; the role is read from the store."""
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user = collection("user").find_one({"_id": database.normalize_id(payload.get("sub"))})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


# ------------------------- Startup ----------------------------
@app.on_event("startup")
async def prepare_database():
    if database.db is None:
        logger.warning("Database not configured; skipping index creation and admin seed")
        return
    database.ensure_indexes()
    # Create a default admin if none exists
    if collection("user").count_documents({}) == 0:
        default = User(
            name="Admin",
            email=os.getenv("ADMIN_EMAIL", "admin@example.com"),
            password_hash=pwd_context.hash(os.getenv("ADMIN_PASSWORD", "admin123")),
            role="admin",
        )
        create_document("user", default)
        logger.info("Seeded default admin %s", default.email)


# ------------------------- Basic Routes -----------------------
@app.get("/")
def root():
    return {"message": "BookCourier server is running"}


@app.get("/test")
def test_database():
    """Store reachability and whether the payment uniqueness indexes are in place."""
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
        "payment_indexes": {"transaction_id": False, "order_id": False},
    }
    if database.db is None:
        return JSONResponse(status_code=503, content=response)
    try:
        response["collections"] = sorted(database.db.list_collection_names())
        response["payment_indexes"] = database.unique_index_state("payment", ["transaction_id", "order_id"])
    except PyMongoError as e:
        logger.error("Health check failed: %s", e)
        response["database"] = f"error: {str(e)[:80]}"
        return JSONResponse(status_code=503, content=response)
    response["database"] = "connected"
    ok = all(response["payment_indexes"].values())
    return JSONResponse(status_code=200 if ok else 503, content=response)


# ------------------------- Auth Endpoints ---------------------
@app.post("/auth/register", response_model=LoginResponse)
def register(payload: RegisterRequest):
    if collection("user").find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(
        name=payload.name,
        email=payload.email,
        photo=payload.photo,
        password_hash=pwd_context.hash(payload.password),
    )
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    doc = get_document_by_id("user", user_id)
    token = create_access_token({"sub": str(user_id), "email": doc["email"], "role": doc["role"]})
    return LoginResponse(token=token, profile=_profile(doc))


@app.post("/auth/login", response_model=LoginResponse)
def login(payload: LoginRequest):
    user = collection("user").find_one({"email": payload.email})
    if not user or not pwd_context.verify(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(user["_id"]), "email": user["email"], "role": user.get("role", "user")})
    return LoginResponse(token=token, profile=_profile(user))


@app.get("/users/me", response_model=UserProfile)
def me(current_user: dict = Depends(get_current_user)):
    return _profile(current_user)


@app.patch("/users/{user_id}/role", response_model=UserProfile)
def update_role(user_id: str, payload: RoleUpdate, current_user: dict = Depends(get_current_user)):
    views.require_admin(current_user)
    if not database.update_document("user", user_id, {"role": payload.role}):
        raise NotFoundError("User not found")
    logger.info("User %s role set to %s by %s", user_id, payload.role, current_user.get("email"))
    return _profile(get_document_by_id("user", user_id))


# ------------------------- Books ------------------------------
@app.get("/books")
def list_books(status: Optional[str] = "publish"):
    return serialize_doc(catalog.list_books(status or None))


@app.post("/books", status_code=201)
def create_book(payload: BookCreate, current_user: dict = Depends(get_current_user)):
    return serialize_doc(catalog.create_book(payload, current_user))


@app.get("/books/{book_id}")
def get_book(book_id: str):
    return serialize_doc(catalog.get_book(book_id))


@app.put("/books/{book_id}")
def update_book(book_id: str, payload: BookUpdate, current_user: dict = Depends(get_current_user)):
    return serialize_doc(catalog.update_book(book_id, payload))


@app.delete("/books/{book_id}")
def delete_book(book_id: str, current_user: dict = Depends(get_current_user)):
    removed = catalog.delete_book(book_id)
    return {"status": "deleted", "orders_removed": removed}


# ------------------------- Orders -----------------------------
@app.post("/orders", status_code=201)
def create_order(payload: OrderCreate):
    order_id = orders.place_order(
        payload.book_id,
        payload.user_id,
        payload.customer_details.model_dump(),
        payload.librarian_details.model_dump() if payload.librarian_details else None,
    )
    return {"inserted_id": str(order_id)}


@app.get("/orders/customer")
def customer_orders(email: str = Query(..., min_length=1)):
    return serialize_doc(views.customer_order_view(email))


@app.get("/orders/librarian")
def librarian_orders(email: str = Query(..., min_length=1)):
    return serialize_doc(views.librarian_order_view(email))


@app.get("/orders/{order_id}")
def get_order(order_id: str):
    return serialize_doc(views.single_order_view(order_id))


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate):
    return serialize_doc(orders.update_order_status(order_id, payload.status))


@app.delete("/orders/{order_id}")
def cancel_order(order_id: str):
    orders.cancel_order(order_id)
    return {"status": "deleted"}


# ------------------------- Payments ---------------------------
@app.post("/payments/intent/{order_id}")
def create_payment_intent(order_id: str, gateway=Depends(payments.get_gateway)):
    return payments.create_charge_intent(order_id, gateway)


@app.post("/payments/confirm")
def confirm_payment(payload: IntentConfirm, gateway=Depends(payments.get_gateway)):
    return serialize_doc(payments.confirm_charge_direct(payload.order_id, payload.payment_intent_id, gateway))


@app.post("/payments/checkout-session/{order_id}")
def create_checkout_session(order_id: str, gateway=Depends(payments.get_gateway)):
    return payments.create_checkout_session(order_id, gateway)


@app.post("/payments/checkout-session/{session_id}/confirm")
def confirm_checkout_session(session_id: str, gateway=Depends(payments.get_gateway)):
    return serialize_doc(payments.confirm_checkout_session(session_id, gateway))


@app.get("/payments")
def customer_payments(email: str = Query(..., min_length=1)):
    return serialize_doc(views.customer_payment_view(email))


@app.get("/admin/transactions")
def admin_transactions(current_user: dict = Depends(get_current_user)):
    return serialize_doc(views.admin_transaction_ledger(current_user))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
