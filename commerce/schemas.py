from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional
from pydantic import BaseModel, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from commerce.models import OrderStatus, PaymentMethod


# Money is held as Decimal and sent as a JSON number
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    """Wire models: snake_case attributes, camelCase JSON keys."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


# --- Catalog ---
class ProductResponse(CamelModel):
    id: str
    name: Optional[str] = None
    price: Money
    images: List[str] = []
    is_active: bool = True


# --- Cart ---
class CartItemAdd(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class CartItemUpdate(CamelModel):
    product_id: str = Field(..., min_length=1)
    # Zero removes the row
    quantity: int = Field(..., ge=0)


class CartItemRemove(CamelModel):
    product_id: str = Field(..., min_length=1)


class CartItemResponse(CamelModel):
    id: str
    product_id: str
    quantity: int
    created_at: datetime
    updated_at: datetime
    product: Optional[ProductResponse] = None


class CartItemEnvelope(CamelModel):
    item: Optional[CartItemResponse] = None


class CartResponse(CamelModel):
    items: List[CartItemResponse]
    subtotal: Money = Decimal("0")


# --- Wishlist ---
class WishlistToggle(CamelModel):
    product_id: str = Field(..., min_length=1)


class WishlistItemResponse(CamelModel):
    id: str
    product_id: str
    created_at: datetime
    product: Optional[ProductResponse] = None


class WishlistResponse(CamelModel):
    items: List[WishlistItemResponse]


class WishlistToggleResponse(CamelModel):
    action: Literal["added", "removed"]


# --- Addresses ---
class Address(CamelModel):
    full_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = "India"
    delivery_date: Optional[date] = None


class ShippingInfo(Address):
    """
    Shipping form as entered by the customer. Every field may be blank
    while the checkout is in progress; completeness is enforced when the
    shipping step is submitted and again when the order is placed.
    """


# --- Orders ---
class OrderItemIn(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class OrderCreate(CamelModel):
    items: List[OrderItemIn]
    shipping_address: ShippingInfo
    billing_address: Optional[ShippingInfo] = None
    payment_method: PaymentMethod


class OrderStatusUpdate(CamelModel):
    status: OrderStatus


class OrderItemResponse(CamelModel):
    product_id: str
    quantity: int
    unit_price: Money
    name: Optional[str] = None


class OrderResponse(CamelModel):
    id: str
    order_number: str
    user_id: str
    items: List[OrderItemResponse]
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    status: OrderStatus
    status_label: str
    subtotal: Money
    shipping: Money
    total: Money
    created_at: datetime
    updated_at: Optional[datetime] = None


class OrderEnvelope(CamelModel):
    order: OrderResponse


class OrderListResponse(CamelModel):
    orders: List[OrderResponse]
    page: int
    limit: int
