"""
Order creation: turns a cart snapshot into an immutable order record.

Placement re-derives every guard the checkout steps checked on the
client (non-empty snapshot, valid addresses, available products) and
consumes the matching cart rows in the same transaction as the order
insert.
"""
import logging
import secrets
import string
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import status
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.utils import (
    settings, transaction, utcnow, AppException, NotFoundException, ValidationException
)
from commerce.addresses import address_errors, to_address_db
from commerce.cart import CartStore
from commerce.catalog import ProductsClient
from commerce.models import OrderDB, OrderItemDB, OrderStatus, PaymentMethod, from_document, to_document
from commerce.schemas import Address, OrderResponse

logger = logging.getLogger("commerce-service")

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
ORDER_NUMBER_ATTEMPTS = 5

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED},
    OrderStatus.FAILED: {OrderStatus.PAID},
    OrderStatus.PAID: {OrderStatus.REFUNDED},
    OrderStatus.REFUNDED: set(),
}


# --- Errors ---
class OrderError(AppException):
    retryable = False


class EmptyCartError(OrderError):
    def __init__(self, detail: str = "Cart is empty"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ProductUnavailableError(OrderError):
    def __init__(self, product_id: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Product {product_id} is unavailable")
        self.product_id = product_id


class OrderPersistenceError(OrderError):
    retryable = True

    def __init__(self, detail: str = "Could not place order, please try again"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


class CartChangedError(OrderError):
    def __init__(self, detail: str = "Your cart changed during checkout, please review it and try again"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class InvalidStatusTransitionError(OrderError):
    def __init__(self, current: OrderStatus, requested: OrderStatus):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot move order from {current.value} to {requested.value}",
        )


# --- Helpers ---
def generate_order_number() -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{utcnow():%Y%m%d}-{suffix}"


def merge_snapshot(items: Iterable[Tuple[str, int]]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for product_id, quantity in items:
        if quantity <= 0:
            raise ValidationException(f"Quantity for product {product_id} must be a positive integer")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def str_to_oid(id: str) -> ObjectId:
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        raise NotFoundException("Order not found")


def to_response(order: OrderDB) -> OrderResponse:
    return OrderResponse(
        **order.model_dump(exclude={"shipping_address", "billing_address"}),
        shipping_address=Address(**order.shipping_address.model_dump()),
        billing_address=Address(**order.billing_address.model_dump()),
        status_label=order.status.label,
    )


class OrderService:
    def __init__(self, client, db, cart: CartStore, catalog: ProductsClient):
        self.client = client
        self.collection = db.orders
        self.cart = cart
        self.catalog = catalog

    async def ensure_indexes(self):
        await self.collection.create_index("order_number", unique=True)
        await self.collection.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    async def place_order(
        self,
        user_id: str,
        items: Iterable[Tuple[str, int]],
        shipping_address: Address,
        billing_address: Optional[Address],
        payment_method: PaymentMethod,
        request_id: Optional[str] = None,
        require_cart_rows: bool = False,
    ) -> OrderDB:
        """
        Place an order for `items` and drop the matching cart rows.

        With `require_cart_rows`, `items` is a cart snapshot and every row
        must still hold the snapshotted quantity when the transaction runs;
        otherwise the order is not kept and CartChangedError is raised. A
        snapshot can therefore be turned into at most one order.
        """
        snapshot = merge_snapshot(items)
        if not snapshot:
            raise EmptyCartError()

        billing_address = billing_address or shipping_address
        for name, address in (("shippingAddress", shipping_address), ("billingAddress", billing_address)):
            errors = address_errors(address)
            if errors:
                raise ValidationException(next(iter(errors.values())), details={name: errors})

        products = await self.catalog.get_many(snapshot, request_id)
        order_items: List[OrderItemDB] = []
        for product_id, quantity in snapshot.items():
            product = products.get(product_id)
            if product is None or not product.is_active:
                raise ProductUnavailableError(product_id)
            order_items.append(OrderItemDB(
                product_id=product_id,
                quantity=quantity,
                unit_price=product.price,
                name=product.name,
            ))

        subtotal = sum((item.unit_price * item.quantity for item in order_items), Decimal("0"))
        shipping = settings.SHIPPING_FEE
        shipping_db = to_address_db(shipping_address)
        billing_db = to_address_db(billing_address)

        for _ in range(ORDER_NUMBER_ATTEMPTS):
            order = OrderDB(
                order_number=generate_order_number(),
                user_id=user_id,
                items=order_items,
                shipping_address=shipping_db,
                billing_address=billing_db,
                payment_method=payment_method,
                subtotal=subtotal,
                shipping=shipping,
                total=subtotal + shipping,
            )
            try:
                async with transaction(self.client) as session:
                    result = await self.collection.insert_one(
                        to_document(order.model_dump(exclude={"id"})), session=session
                    )
                    if require_cart_rows:
                        consumed = await self.cart.consume(user_id, snapshot, session=session)
                        if consumed != len(snapshot):
                            # Undone by the abort; without a session it is the only rollback
                            await self.collection.delete_one({"_id": result.inserted_id}, session=session)
                            raise CartChangedError()
                    else:
                        consumed = await self.cart.remove_products(user_id, snapshot, session=session)
                break
            except DuplicateKeyError:
                # Order number collision; the transaction was rolled back
                continue
            except PyMongoError:
                logger.exception("Order persistence failed", extra={"user_id": user_id})
                raise OrderPersistenceError()
        else:
            raise OrderPersistenceError()

        order.id = str(result.inserted_id)
        logger.info("Order placed", extra={
            "user_id": user_id,
            "order_id": order.id,
            "order_number": order.order_number,
            "total": order.total,
            "quantity": consumed,
        })
        return order

    async def list_orders(self, user_id: str, page: int = 1, limit: int = 10) -> List[OrderDB]:
        skip = (page - 1) * limit
        cursor = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [OrderDB(**from_document(doc)) async for doc in cursor]

    async def get_order(self, user_id: str, order_id: str) -> OrderDB:
        doc = await self.collection.find_one({"_id": str_to_oid(order_id), "user_id": user_id})
        if not doc:
            raise NotFoundException("Order not found")
        return OrderDB(**from_document(doc))

    async def update_status(self, order_id: str, new_status: OrderStatus) -> OrderDB:
        """Apply a payment-confirmation event to an order."""
        oid = str_to_oid(order_id)
        doc = await self.collection.find_one({"_id": oid})
        if not doc:
            raise NotFoundException("Order not found")

        current = OrderStatus(doc["status"])
        if new_status == current:
            return OrderDB(**from_document(doc))
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStatusTransitionError(current, new_status)

        # Compare-and-set on the status read above
        result = await self.collection.update_one(
            {"_id": oid, "status": current.value},
            {"$set": {"status": new_status.value, "updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            latest = await self.collection.find_one({"_id": oid})
            if not latest:
                raise NotFoundException("Order not found")
            raise InvalidStatusTransitionError(OrderStatus(latest["status"]), new_status)

        logger.info("Order status changed", extra={"order_id": order_id, "status": new_status.value})
        updated = await self.collection.find_one({"_id": oid})
        if not updated:
            raise NotFoundException("Order not found")
        return OrderDB(**from_document(updated))
