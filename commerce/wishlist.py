import logging
from typing import List
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from shared.utils import utcnow
from commerce.models import WishlistItemDB, from_document, to_document

logger = logging.getLogger("commerce-service")

ADDED = "added"
REMOVED = "removed"


class WishlistStore:
    def __init__(self, db):
        self.collection = db.wishlist_items

    async def ensure_indexes(self):
        await self.collection.create_index(
            [("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True
        )

    async def list(self, user_id: str) -> List[WishlistItemDB]:
        cursor = self.collection.find({"user_id": user_id}).sort("_id", ASCENDING)
        return [WishlistItemDB(**from_document(doc)) async for doc in cursor]

    async def toggle(self, user_id: str, product_id: str) -> str:
        """
        Remove the row if present, insert it otherwise, and report which.

        The delete is the existence test. When two toggles both find the
        row absent, the unique index lets only one insert; the loser is
        ordered after it and removes the row instead.
        """
        key = {"user_id": user_id, "product_id": product_id}

        if await self.collection.find_one_and_delete(key) is not None:
            action = REMOVED
        else:
            item = WishlistItemDB(user_id=user_id, product_id=product_id, created_at=utcnow())
            try:
                await self.collection.insert_one(to_document(item.model_dump(exclude={"id"})))
                action = ADDED
            except DuplicateKeyError:
                await self.collection.delete_one(key)
                action = REMOVED

        logger.info("Wishlist toggled", extra={"user_id": user_id, "product_id": product_id, "action": action})
        return action
