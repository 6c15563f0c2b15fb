"""
Checkout workflow: Shipping -> Payment -> Completed | Failed.

The session document is held by the caller and re-submitted on every
step; nothing here is stored server-side. The verified flags are never
taken from the caller: each channel carries a signed proof bound to the
value that was verified, and the flag is recomputed from it on every
step. Editing the email or phone therefore drops the flag, and a
verification that completes after an edit yields a proof for the stale
value, which does not count. Proofs are also bound to the identity they
were issued to, so they cannot be replayed in another shopper's session.
"""
import asyncio
import logging
from datetime import date, timedelta
from enum import Enum
from typing import Dict, Optional
from jose import JWTError, jwt
from pydantic import Field
from pydantic.alias_generators import to_camel

from shared.utils import settings, create_access_token, AppException, ValidationException
from commerce.addresses import EMAIL_PATTERN, INVALID_EMAIL, INVALID_PHONE, PHONE_PATTERN, address_errors
from commerce.cart import CartStore
from commerce.models import Identity, PaymentMethod
from commerce.orders import OrderService, to_response
from commerce.schemas import CamelModel, OrderResponse, ShippingInfo

logger = logging.getLogger("commerce-service")

VERIFICATION_REQUIRED = "Please verify your email and phone number before proceeding."
PAYMENT_METHOD_REQUIRED = "Please select a payment method."
PROOF_TYPE = "contact-verification"


class CheckoutStep(str, Enum):
    SHIPPING = "shipping"
    PAYMENT = "payment"
    COMPLETED = "completed"
    FAILED = "failed"


class VerificationChannel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class CheckoutSession(CamelModel):
    step: CheckoutStep = CheckoutStep.SHIPPING
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)
    email_proof: Optional[str] = None
    phone_proof: Optional[str] = None
    # Derived from the proofs on every step
    email_verified: bool = False
    phone_verified: bool = False
    payment_method: Optional[PaymentMethod] = None
    errors: Dict[str, str] = {}
    order: Optional[OrderResponse] = None
    error: Optional[str] = None


class Verifier:
    """
    Simulated one-time-code verifier: waits, then issues a signed proof
    that `value` was verified on `channel` for `identity_id`.
    """

    def __init__(self, delay: float = settings.VERIFICATION_DELAY_SECONDS, ttl_minutes: int = settings.VERIFICATION_TTL_MINUTES):
        self.delay = delay
        self.ttl = timedelta(minutes=ttl_minutes)

    async def verify(self, channel: VerificationChannel, value: str, identity_id: str) -> str:
        await asyncio.sleep(self.delay)
        return create_access_token(
            {"sub": value, "chn": channel.value, "uid": identity_id, "typ": PROOF_TYPE},
            expires_delta=self.ttl,
        )

    def is_verified(self, proof: Optional[str], channel: VerificationChannel, value: str, identity_id: str) -> bool:
        if not proof or not value:
            return False
        try:
            payload = jwt.decode(proof, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        except JWTError:
            return False
        return (
            payload.get("typ") == PROOF_TYPE
            and payload.get("chn") == channel.value
            and payload.get("sub") == value
            and payload.get("uid") == identity_id
        )


class CheckoutWorkflow:
    def __init__(self, verifier: Verifier, orders: OrderService, cart: CartStore):
        self.verifier = verifier
        self.orders = orders
        self.cart = cart

    def start(self) -> CheckoutSession:
        delivery = date.today() + timedelta(days=settings.DELIVERY_LEAD_DAYS)
        return CheckoutSession(shipping=ShippingInfo(delivery_date=delivery))

    def refresh(self, session: CheckoutSession, identity: Identity) -> CheckoutSession:
        return session.model_copy(update={
            "email_verified": self.verifier.is_verified(session.email_proof, VerificationChannel.EMAIL, session.shipping.email.strip(), identity.id),
            "phone_verified": self.verifier.is_verified(session.phone_proof, VerificationChannel.PHONE, session.shipping.phone.strip(), identity.id),
        })

    def update_shipping(self, session: CheckoutSession, identity: Identity, changes: dict) -> CheckoutSession:
        if session.step != CheckoutStep.SHIPPING:
            raise ValidationException("Go back to the shipping step to edit shipping details")

        shipping = session.shipping.model_copy(update=changes)
        update = {"shipping": shipping, "errors": {}}
        if shipping.email != session.shipping.email:
            update["email_proof"] = None
        if shipping.phone != session.shipping.phone:
            update["phone_proof"] = None
        return self.refresh(session.model_copy(update=update), identity)

    async def verify(self, session: CheckoutSession, identity: Identity, channel: VerificationChannel) -> CheckoutSession:
        session = self.refresh(session, identity)
        value = getattr(session.shipping, channel.value).strip()
        pattern, message = (EMAIL_PATTERN, INVALID_EMAIL) if channel == VerificationChannel.EMAIL else (PHONE_PATTERN, INVALID_PHONE)
        if not pattern.match(value):
            return session.model_copy(update={"errors": {channel.value: message}})

        proof = await self.verifier.verify(channel, value, identity.id)
        logger.info("Contact verified", extra={"channel": channel.value})
        return self.refresh(session.model_copy(update={f"{channel.value}_proof": proof, "errors": {}}), identity)

    def shipping_errors(self, session: CheckoutSession) -> Dict[str, str]:
        errors = {to_camel(field): message for field, message in address_errors(session.shipping).items()}
        if not errors and not (session.email_verified and session.phone_verified):
            errors["verification"] = VERIFICATION_REQUIRED
        return errors

    def submit_shipping(self, session: CheckoutSession, identity: Identity) -> CheckoutSession:
        if session.step != CheckoutStep.SHIPPING:
            raise ValidationException(f"Cannot submit shipping details from the {session.step.value} step")

        session = self.refresh(session, identity)
        errors = self.shipping_errors(session)
        if errors:
            return session.model_copy(update={"errors": errors})
        return session.model_copy(update={"step": CheckoutStep.PAYMENT, "errors": {}})

    def back(self, session: CheckoutSession, identity: Identity) -> CheckoutSession:
        if session.step == CheckoutStep.COMPLETED:
            raise ValidationException("Checkout is already completed")
        return self.refresh(session.model_copy(update={"step": CheckoutStep.SHIPPING, "errors": {}, "error": None}), identity)

    async def submit_payment(
        self,
        session: CheckoutSession,
        identity: Identity,
        payment_method: Optional[PaymentMethod],
        request_id: Optional[str] = None,
    ) -> CheckoutSession:
        if session.step not in (CheckoutStep.PAYMENT, CheckoutStep.FAILED):
            raise ValidationException(f"Cannot submit payment from the {session.step.value} step")

        session = self.refresh(session.model_copy(update={"payment_method": payment_method or session.payment_method}), identity)
        if session.payment_method is None:
            return session.model_copy(update={"errors": {"paymentMethod": PAYMENT_METHOD_REQUIRED}})

        # The client may have skipped the shipping step; re-check its guard
        errors = self.shipping_errors(session)
        if errors:
            return session.model_copy(update={"step": CheckoutStep.SHIPPING, "errors": errors})

        snapshot = await self.cart.snapshot(identity.id)
        try:
            order = await self.orders.place_order(
                identity.id,
                snapshot.items(),
                session.shipping,
                session.shipping,
                session.payment_method,
                request_id,
                require_cart_rows=True,
            )
        except AppException as e:
            logger.warning("Checkout failed", extra={"user_id": identity.id, "step": CheckoutStep.FAILED.value})
            return session.model_copy(update={"step": CheckoutStep.FAILED, "error": e.detail, "errors": {}})

        return session.model_copy(update={
            "step": CheckoutStep.COMPLETED,
            "order": to_response(order),
            "error": None,
            "errors": {},
        })


# --- Request bodies ---
class ShippingUpdate(CamelModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    country: Optional[str] = None
    delivery_date: Optional[date] = None


class ShippingStepRequest(CamelModel):
    session: CheckoutSession
    changes: Optional[ShippingUpdate] = None
    # False applies the edits without attempting the transition
    submit: bool = True


class VerifyRequest(CamelModel):
    session: CheckoutSession
    channel: VerificationChannel


class SessionRequest(CamelModel):
    session: CheckoutSession


class PaymentRequest(CamelModel):
    session: CheckoutSession
    payment_method: Optional[PaymentMethod] = None
