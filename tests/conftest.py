import os

# Settings are read once at import time
os.environ.setdefault("MONGO_TRANSACTIONS", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("VERIFICATION_DELAY_SECONDS", "0")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from shared.utils import create_access_token
from commerce import main
from commerce.cart import CartStore
from commerce.catalog import ProductsClient
from commerce.orders import OrderService
from commerce.schemas import ShippingInfo
from commerce.wishlist import WishlistStore

CATALOG = {
    "p1": {"id": "p1", "name": "Golden Heart Necklace", "price": 699, "images": ["/img/p1.jpg"], "is_active": True},
    "p2": {"id": "p2", "name": "Crystal Drop Earrings", "price": 549, "image_url": "/img/p2.jpg", "is_active": True},
    "p-retired": {"id": "p-retired", "name": "Retired Bangle", "price": 300, "is_active": False},
}


def catalog_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/health":
        return httpx.Response(200, json={"status": "healthy"})
    product_id = request.url.path.rsplit("/", 1)[-1]
    product = CATALOG.get(product_id)
    if product is None:
        return httpx.Response(404, json={"detail": "Product not found"})
    return httpx.Response(200, json={"success": True, "data": product})


def unreachable_catalog(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def make_products_client() -> ProductsClient:
    return ProductsClient(base_url="http://products.test", transport=httpx.MockTransport(catalog_handler))


class YieldingCollection:
    """Collection wrapper that yields to the event loop after each named call."""

    def __init__(self, collection, *names):
        self._collection = collection
        self._names = names

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if name not in self._names:
            return attr

        async def call(*args, **kwargs):
            result = await attr(*args, **kwargs)
            await asyncio.sleep(0)
            return result

        return call


def auth_headers(user_id: str = "u1", role: str = "customer") -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


def shipping_info(**overrides) -> ShippingInfo:
    values = {
        "full_name": "Asha Rao",
        "email": "asha@example.com",
        "phone": "9876543210",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
        "country": "India",
    }
    values.update(overrides)
    return ShippingInfo(**values)


@pytest.fixture()
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture()
def db(mongo_client):
    return mongo_client["commerce_test"]


@pytest.fixture()
def products_client():
    return make_products_client()


@pytest.fixture()
async def cart(db):
    store = CartStore(db)
    await store.ensure_indexes()
    return store


@pytest.fixture()
async def wishlist(db):
    store = WishlistStore(db)
    await store.ensure_indexes()
    return store


@pytest.fixture()
async def orders(mongo_client, db, cart, products_client):
    service = OrderService(mongo_client, db, cart, products_client)
    await service.ensure_indexes()
    return service


@pytest.fixture()
def catalog_transport():
    return httpx.MockTransport(catalog_handler)


@pytest.fixture()
def client(monkeypatch, catalog_transport):
    mongo = AsyncMongoMockClient()
    monkeypatch.setattr(main, "get_db_client", lambda: mongo)
    monkeypatch.setattr(
        main, "ProductsClient", lambda: ProductsClient(base_url="http://products.test", transport=catalog_transport)
    )
    with TestClient(main.app) as test_client:
        yield test_client
