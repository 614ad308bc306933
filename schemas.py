"""
Database Schemas

MongoDB collection schemas and request bodies, defined with Pydantic.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Book -> "book" collection
- Order -> "order" collection
- Payment -> "payment" collection
"""

from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional, Literal

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case the domain part, the same way EmailStr stores it."""
    if not email:
        return email
    email = email.strip()
    local, sep, domain = email.rpartition("@")
    if not sep:
        return email
    return f"{local}@{domain.lower()}"


# ------------------------- Embedded snapshots -----------------
class LibrarianDetails(BaseModel):
    email: Optional[str] = Field(None, description="Librarian email")
    name: str = Field("Unknown", description="Librarian display name")
    photo: Optional[str] = Field(None, description="Librarian photo URL")

    @field_validator("email")
    @classmethod
    def lower_email_domain(cls, v):
        return normalize_email(v)


class BookLibrarian(BaseModel):
    email: Optional[str] = Field(None, description="Librarian email")
    name: str = Field("Unknown", description="Librarian display name")
    image: Optional[str] = Field(None, description="Librarian photo URL")

    @field_validator("email")
    @classmethod
    def lower_email_domain(cls, v):
        return normalize_email(v)


class CustomerDetails(BaseModel):
    email: EmailStr = Field(..., description="Customer email")
    name: Optional[str] = Field(None, description="Customer name")
    phone: Optional[str] = None
    address: Optional[str] = None


class PaymentCustomer(BaseModel):
    """Customer snapshot on a payment; legacy orders may lack an email"""
    email: Optional[str] = None
    name: Optional[str] = None


class ProductSnapshot(BaseModel):
    book_id: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)


# ------------------------- Collections ------------------------
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    photo: Optional[str] = Field(None, description="Avatar URL")
    password_hash: str = Field(..., description="pbkdf2_sha256 hash of the password")
    role: Literal["user", "librarian", "admin"] = Field("user", description="Role for access control")


class Book(BaseModel):
    name: str = Field(..., description="Book title")
    author: str = Field(..., description="Author name")
    price: float = Field(..., ge=0, description="Price in major currency units")
    image: Optional[str] = Field(None, description="Cover image URL")
    description: Optional[str] = Field(None, description="Description")
    status: Literal["publish", "unpublish"] = Field("publish", description="Catalog visibility")
    librarian: BookLibrarian = Field(default_factory=BookLibrarian, description="Owning librarian snapshot")


class Order(BaseModel):
    """Orders collection schema; book_id/user_id are normalized before insert"""
    book_id: str = Field(..., description="Referenced Book _id")
    user_id: str = Field(..., description="Customer User _id")
    librarian_details: LibrarianDetails = Field(default_factory=LibrarianDetails)
    customer_details: CustomerDetails
    order_status: Literal["pending", "processing", "shipped", "delivered", "cancelled"] = "pending"
    payment_status: Literal["unpaid", "paid"] = "unpaid"


class Payment(BaseModel):
    order_id: str = Field(..., description="Order _id as string")
    transaction_id: str = Field(..., description="Provider payment intent id")
    amount: float = Field(..., ge=0, description="Amount in major currency units")
    currency: str
    customer: PaymentCustomer
    product: ProductSnapshot


# ------------------------- Request bodies ---------------------
class OrderCreate(BaseModel):
    book_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    librarian_details: Optional[LibrarianDetails] = None
    customer_details: CustomerDetails


class OrderStatusUpdate(BaseModel):
    status: str


class BookCreate(BaseModel):
    name: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    status: Literal["publish", "unpublish"] = "publish"


class BookUpdate(BaseModel):
    name: Optional[str] = None
    author: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["publish", "unpublish"]] = None


class IntentConfirm(BaseModel):
    order_id: str
    payment_intent_id: str


class RoleUpdate(BaseModel):
    role: Literal["user", "librarian", "admin"]


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    photo: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
