from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from typing import Dict, Optional

from shared.utils import (
    get_db_client, settings, utcnow, SuccessResponse, ErrorResponse, HealthResponse,
    AppException, PersistenceException, ServiceUnavailableException, UnauthorizedException
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from commerce.cart import CartStore
from commerce.catalog import Product, ProductsClient
from commerce.checkout import (
    CheckoutSession, CheckoutWorkflow, Verifier,
    PaymentRequest, SessionRequest, ShippingStepRequest, VerifyRequest
)
from commerce.identity import get_current_identity
from commerce.models import CartItemDB, Identity, WishlistItemDB
from commerce.orders import OrderService, to_response
from commerce.schemas import (
    CartItemAdd, CartItemUpdate, CartItemRemove, CartItemEnvelope, CartItemResponse, CartResponse,
    WishlistToggle, WishlistToggleResponse, WishlistItemResponse, WishlistResponse,
    OrderCreate, OrderEnvelope, OrderListResponse, OrderStatusUpdate, ProductResponse
)
from commerce.wishlist import WishlistStore

SERVICE_NAME = "commerce-service"

# Setup Logging
logger = setup_logging(SERVICE_NAME)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_db_client()
    yield
    await shutdown_db_client()

app = FastAPI(title="Commerce Service", lifespan=lifespan)

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    app.products_client = ProductsClient()

    app.cart_store = CartStore(app.mongodb)
    app.wishlist_store = WishlistStore(app.mongodb)
    app.order_service = OrderService(app.mongodb_client, app.mongodb, app.cart_store, app.products_client)
    app.checkout = CheckoutWorkflow(Verifier(), app.order_service, app.cart_store)

    # Indexes
    await app.cart_store.ensure_indexes()
    await app.wishlist_store.ensure_indexes()
    await app.order_service.ensure_indexes()

async def shutdown_db_client():
    await app.products_client.close()
    app.mongodb_client.close()

# --- Error Handlers ---
def error_response(status_code: int, error: str, details=None, headers=None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return error_response(exc.status_code, exc.detail, exc.details, exc.headers)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", jsonable_encoder(exc.errors()))

@app.exception_handler(PyMongoError)
async def persistence_exception_handler(request: Request, exc: PyMongoError):
    logger.error("Store operation failed", exc_info=exc, extra={"request_id": getattr(request.state, "request_id", None)})
    failure = PersistenceException()
    return error_response(failure.status_code, failure.detail)

# --- Dependencies ---
def request_id_of(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)

async def require_internal_key(x_internal_key: Optional[str] = Header(None)):
    if x_internal_key != settings.INTERNAL_API_KEY:
        raise UnauthorizedException("Invalid internal credentials")

# --- Helpers ---
async def fetch_products(product_ids, request: Request) -> Dict[str, Optional[Product]]:
    try:
        return await app.products_client.get_many(product_ids, request_id_of(request))
    except ServiceUnavailableException:
        # Rows are served without product details while the catalog is down
        return {}

def product_response(product: Optional[Product]) -> Optional[ProductResponse]:
    if product is None:
        return None
    return ProductResponse(**product.model_dump())

def cart_item_response(item: CartItemDB, product: Optional[Product] = None) -> CartItemResponse:
    return CartItemResponse(**item.model_dump(), product=product_response(product))

def wishlist_item_response(item: WishlistItemDB, product: Optional[Product] = None) -> WishlistItemResponse:
    return WishlistItemResponse(**item.model_dump(), product=product_response(product))

# --- Endpoints ---

@app.get("/")
async def read_root():
    return {"message": "Commerce Service is running"}

# Cart
@app.get("/cart", response_model=CartResponse)
@limiter.limit(settings.RATE_LIMIT)
async def get_cart(request: Request, identity: Identity = Depends(get_current_identity)):
    items = await app.cart_store.list(identity.id)
    products = await fetch_products([i.product_id for i in items], request)

    subtotal = sum(
        (products[i.product_id].price * i.quantity for i in items if products.get(i.product_id)),
        start=0,
    )
    return CartResponse(
        items=[cart_item_response(i, products.get(i.product_id)) for i in items],
        subtotal=subtotal,
    )

@app.post("/cart", response_model=CartItemEnvelope)
@limiter.limit(settings.RATE_LIMIT)
async def add_to_cart(item: CartItemAdd, request: Request, identity: Identity = Depends(get_current_identity)):
    cart_item = await app.cart_store.add(identity.id, item.product_id, item.quantity)
    return CartItemEnvelope(item=cart_item_response(cart_item))

@app.put("/cart", response_model=CartItemEnvelope)
@limiter.limit(settings.RATE_LIMIT)
async def update_cart_item(update: CartItemUpdate, request: Request, identity: Identity = Depends(get_current_identity)):
    cart_item = await app.cart_store.set_quantity(identity.id, update.product_id, update.quantity)
    return CartItemEnvelope(item=cart_item_response(cart_item) if cart_item else None)

@app.delete("/cart", response_model=SuccessResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def remove_cart_item(item: CartItemRemove, request: Request, identity: Identity = Depends(get_current_identity)):
    await app.cart_store.remove(identity.id, item.product_id)
    return SuccessResponse(message="Item removed from cart")

@app.delete("/cart/all", response_model=SuccessResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def clear_cart(request: Request, identity: Identity = Depends(get_current_identity)):
    removed = await app.cart_store.clear(identity.id)
    return SuccessResponse(data={"removed": removed}, message="Cart cleared")

# Wishlist
@app.get("/wishlist", response_model=WishlistResponse)
@limiter.limit(settings.RATE_LIMIT)
async def get_wishlist(request: Request, identity: Identity = Depends(get_current_identity)):
    items = await app.wishlist_store.list(identity.id)
    products = await fetch_products([i.product_id for i in items], request)
    return WishlistResponse(items=[wishlist_item_response(i, products.get(i.product_id)) for i in items])

@app.post("/wishlist", response_model=WishlistToggleResponse)
@limiter.limit(settings.RATE_LIMIT)
async def toggle_wishlist(item: WishlistToggle, request: Request, identity: Identity = Depends(get_current_identity)):
    action = await app.wishlist_store.toggle(identity.id, item.product_id)
    return WishlistToggleResponse(action=action)

# Orders
@app.post("/orders", response_model=OrderEnvelope, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT)
async def create_order(order: OrderCreate, request: Request, identity: Identity = Depends(get_current_identity)):
    placed = await app.order_service.place_order(
        identity.id,
        [(i.product_id, i.quantity) for i in order.items],
        order.shipping_address,
        order.billing_address,
        order.payment_method,
        request_id_of(request),
    )
    return OrderEnvelope(order=to_response(placed))

@app.get("/orders", response_model=OrderListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_orders(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100)
):
    orders = await app.order_service.list_orders(identity.id, page, limit)
    return OrderListResponse(orders=[to_response(o) for o in orders], page=page, limit=limit)

@app.get("/orders/{order_id}", response_model=OrderEnvelope)
async def get_order(order_id: str, identity: Identity = Depends(get_current_identity)):
    order = await app.order_service.get_order(identity.id, order_id)
    return OrderEnvelope(order=to_response(order))

@app.put("/orders/{order_id}/status", response_model=OrderEnvelope, dependencies=[Depends(require_internal_key)])
async def update_order_status(order_id: str, status_update: OrderStatusUpdate):
    # Payment confirmation events from the payments service
    order = await app.order_service.update_status(order_id, status_update.status)
    return OrderEnvelope(order=to_response(order))

# Checkout
@app.post("/checkout/start", response_model=CheckoutSession)
async def start_checkout(identity: Identity = Depends(get_current_identity)):
    return app.checkout.start()

@app.post("/checkout/shipping", response_model=CheckoutSession)
async def checkout_shipping(body: ShippingStepRequest, identity: Identity = Depends(get_current_identity)):
    session = body.session
    if body.changes is not None:
        session = app.checkout.update_shipping(session, identity, body.changes.model_dump(exclude_unset=True, exclude_none=True))
    if body.submit:
        session = app.checkout.submit_shipping(session, identity)
    return session

@app.post("/checkout/verify", response_model=CheckoutSession)
@limiter.limit(settings.RATE_LIMIT)
async def checkout_verify(body: VerifyRequest, request: Request, identity: Identity = Depends(get_current_identity)):
    return await app.checkout.verify(body.session, identity, body.channel)

@app.post("/checkout/back", response_model=CheckoutSession)
async def checkout_back(body: SessionRequest, identity: Identity = Depends(get_current_identity)):
    return app.checkout.back(body.session, identity)

@app.post("/checkout/payment", response_model=CheckoutSession)
@limiter.limit(settings.RATE_LIMIT)
async def checkout_payment(body: PaymentRequest, request: Request, identity: Identity = Depends(get_current_identity)):
    return await app.checkout.submit_payment(body.session, identity, body.payment_method, request_id_of(request))

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    products_status = "healthy" if await app.products_client.ping() else "unreachable"

    overall_status = "healthy" if db_status == "connected" and products_status == "healthy" else "unhealthy"

    if overall_status == "unhealthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service=SERVICE_NAME,
        status=overall_status,
        timestamp=utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"products-service": products_status}
    )
