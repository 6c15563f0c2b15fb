from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "commerce_db"
    # Multi-document transactions need a replica set; standalone dev servers turn this off
    MONGO_TRANSACTIONS: bool = True
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    PRODUCTS_SERVICE_URL: str = "http://products-service:8002"
    PRODUCTS_TIMEOUT_SECONDS: float = 5.0
    VERIFICATION_DELAY_SECONDS: float = 1.5
    VERIFICATION_TTL_MINUTES: int = 30
    SHIPPING_FEE: Decimal = Decimal("0")
    DELIVERY_LEAD_DAYS: int = 7
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT: str = "60/minute"
    # Shared with the payments service for order status events
    INTERNAL_API_KEY: str = "internal-secret"

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

@asynccontextmanager
async def transaction(client: AsyncIOMotorClient):
    """
    Yield a session bound to an open transaction, or None when
    transactions are disabled. Pass the yielded value as `session=`
    to every collection call that must commit together.
    """
    if not settings.MONGO_TRANSACTIONS:
        yield None
        return
    async with await client.start_session() as session:
        async with session.start_transaction():
            yield session

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# --- Authentication ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    # Add JTI
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None,
        details: Any = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.details = details

class ValidationException(AppException):
    def __init__(self, detail: str = "Invalid request", details: Any = None):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail, details=details)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class ConflictException(AppException):
    def __init__(self, detail: str = "Resource conflict"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

class PersistenceException(AppException):
    # Storage details never reach the caller
    def __init__(self, detail: str = "Internal server error"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

class ServiceUnavailableException(AppException):
    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )
