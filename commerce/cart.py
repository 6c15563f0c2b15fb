"""
Per-identity cart rows, one per (user_id, product_id).

Every mutation is a single atomic statement against the row, so two
concurrent adds for the same pair can never lose an increment.
"""
import logging
from typing import Dict, Iterable, List, Optional
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from shared.utils import utcnow, ConflictException, NotFoundException, ValidationException
from commerce.models import CartItemDB, from_document

logger = logging.getLogger("commerce-service")


class CartStore:
    def __init__(self, db):
        self.collection = db.cart_items

    async def ensure_indexes(self):
        await self.collection.create_index(
            [("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True
        )

    async def list(self, user_id: str) -> List[CartItemDB]:
        cursor = self.collection.find({"user_id": user_id}).sort("_id", ASCENDING)
        return [CartItemDB(**from_document(doc)) async for doc in cursor]

    async def snapshot(self, user_id: str) -> Dict[str, int]:
        return {item.product_id: item.quantity for item in await self.list(user_id)}

    async def add(self, user_id: str, product_id: str, quantity: int) -> CartItemDB:
        """Merge `quantity` into the row, creating it on first add."""
        if quantity <= 0:
            raise ValidationException("Quantity must be a positive integer")

        now = utcnow()
        for _ in range(2):
            try:
                doc = await self.collection.find_one_and_update(
                    {"user_id": user_id, "product_id": product_id},
                    {
                        "$inc": {"quantity": quantity},
                        "$set": {"updated_at": now},
                        "$setOnInsert": {"created_at": now},
                    },
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                break
            except DuplicateKeyError:
                # Lost the insert race to a concurrent first add; the retry hits its row
                continue
        else:
            raise ConflictException("Cart item is being modified concurrently")

        logger.info("Cart item merged", extra={"user_id": user_id, "product_id": product_id, "quantity": doc["quantity"]})
        return CartItemDB(**from_document(doc))

    async def set_quantity(self, user_id: str, product_id: str, quantity: int) -> Optional[CartItemDB]:
        """Replace the row's quantity. Zero removes the row and returns None."""
        if quantity < 0:
            raise ValidationException("Quantity must not be negative")
        if quantity == 0:
            await self.remove(user_id, product_id)
            return None

        doc = await self.collection.find_one_and_update(
            {"user_id": user_id, "product_id": product_id},
            {"$set": {"quantity": quantity, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundException("Item not found in cart")

        logger.info("Cart item replaced", extra={"user_id": user_id, "product_id": product_id, "quantity": quantity})
        return CartItemDB(**from_document(doc))

    async def remove(self, user_id: str, product_id: str):
        result = await self.collection.delete_one({"user_id": user_id, "product_id": product_id})
        if result.deleted_count == 0:
            raise NotFoundException("Item not found in cart")
        logger.info("Cart item removed", extra={"user_id": user_id, "product_id": product_id})

    async def clear(self, user_id: str) -> int:
        result = await self.collection.delete_many({"user_id": user_id})
        return result.deleted_count

    async def remove_products(self, user_id: str, product_ids: Iterable[str], session=None) -> int:
        """Delete the consumed rows of a cart snapshot, inside the caller's transaction."""
        result = await self.collection.delete_many(
            {"user_id": user_id, "product_id": {"$in": list(product_ids)}},
            session=session,
        )
        return result.deleted_count

    async def consume(self, user_id: str, snapshot: Dict[str, int], session=None) -> int:
        """
        Delete the rows of a snapshot that still hold the snapshotted
        quantity, inside the caller's transaction. Returns how many matched.
        """
        consumed = 0
        for product_id, quantity in snapshot.items():
            result = await self.collection.delete_one(
                {"user_id": user_id, "product_id": product_id, "quantity": quantity},
                session=session,
            )
            consumed += result.deleted_count
        return consumed
