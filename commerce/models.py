from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional
from pydantic import BaseModel, Field

from shared.utils import utcnow


class Role(str, Enum):
    CUSTOMER = "customer"
    RESELLER = "reseller"


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    CASH_ON_DELIVERY = "cash-on-delivery"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def label(self) -> str:
        match self:
            case OrderStatus.PENDING:
                return "Pending"
            case OrderStatus.PAID:
                return "Paid"
            case OrderStatus.FAILED:
                return "Failed"
            case OrderStatus.REFUNDED:
                return "Refunded"
        raise ValueError(f"Unhandled order status: {self!r}")


class Identity(BaseModel):
    id: str
    role: Role


class CartItemDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    product_id: str
    quantity: int = Field(..., gt=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


class WishlistItemDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    product_id: str
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


class AddressDB(BaseModel):
    full_name: str
    email: str
    phone: str
    address: str
    city: str
    state: str
    pincode: str
    country: str
    delivery_date: Optional[date] = None


class OrderItemDB(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    name: Optional[str] = None


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_number: str
    user_id: str
    items: List[OrderItemDB]
    shipping_address: AddressDB
    billing_address: AddressDB
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    subtotal: Decimal
    shipping: Decimal = Decimal("0")
    total: Decimal
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


def to_document(value: Any) -> Any:
    """Convert a dumped model into BSON-encodable values (Decimal and date are not)."""
    if isinstance(value, dict):
        return {k: to_document(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_document(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    return value


def from_document(doc: dict) -> dict:
    """Expose Mongo's ObjectId `_id` as a string `id`."""
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc
