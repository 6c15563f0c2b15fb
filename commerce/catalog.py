import asyncio
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional
import httpx
from pydantic import BaseModel

from shared.utils import settings, ServiceUnavailableException

logger = logging.getLogger("commerce-service")


class Product(BaseModel):
    id: str
    name: Optional[str] = None
    price: Decimal
    images: List[str] = []
    is_active: bool = True


def parse_product(data: dict) -> Product:
    images = data.get("images")
    if images is None:
        images = [data["image_url"]] if data.get("image_url") else []
    return Product(
        id=str(data.get("id") or data.get("_id")),
        name=data.get("name"),
        price=Decimal(str(data["price"])),
        images=images,
        is_active=data.get("is_active", True),
    )


class ProductsClient:
    """Read-only client for the products service."""

    def __init__(
        self,
        base_url: str = settings.PRODUCTS_SERVICE_URL,
        timeout: float = settings.PRODUCTS_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def get(self, product_id: str, request_id: Optional[str] = None) -> Optional[Product]:
        """Return the product, or None when the catalog does not know it."""
        headers = {}
        if request_id:
            headers["X-Request-ID"] = request_id
        try:
            response = await self._client.get(f"/products/{product_id}", headers=headers)
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.RequestError:
            logger.error("Products service unreachable", extra={"target": self.base_url, "product_id": product_id})
            raise ServiceUnavailableException("Products service unavailable")
        except httpx.HTTPStatusError:
            logger.error("Products service error", extra={"target": self.base_url, "product_id": product_id})
            raise ServiceUnavailableException("Products service unavailable")

        body = response.json()
        return parse_product(body.get("data", body))

    async def get_many(self, product_ids: Iterable[str], request_id: Optional[str] = None) -> Dict[str, Optional[Product]]:
        ids = list(dict.fromkeys(product_ids))
        products = await asyncio.gather(*(self.get(pid, request_id) for pid in ids))
        return dict(zip(ids, products))

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/health", timeout=2.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self):
        await self._client.aclose()
