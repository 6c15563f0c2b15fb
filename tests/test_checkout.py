import asyncio
from decimal import Decimal

import pytest

from shared.utils import ValidationException
from commerce.checkout import (
    CheckoutSession, CheckoutStep, CheckoutWorkflow, VerificationChannel, Verifier,
    PAYMENT_METHOD_REQUIRED, VERIFICATION_REQUIRED,
)
from commerce.models import Identity, PaymentMethod, Role
from tests.conftest import auth_headers, shipping_info

FILLED = shipping_info().model_dump()


@pytest.fixture()
def workflow(orders, cart):
    return CheckoutWorkflow(Verifier(delay=0), orders, cart)


@pytest.fixture()
def identity():
    return Identity(id="u1", role=Role.CUSTOMER)


async def verified_session(workflow: CheckoutWorkflow, identity: Identity) -> CheckoutSession:
    session = workflow.update_shipping(workflow.start(), identity, FILLED)
    session = await workflow.verify(session, identity, VerificationChannel.EMAIL)
    return await workflow.verify(session, identity, VerificationChannel.PHONE)


async def payment_session(workflow: CheckoutWorkflow, identity: Identity) -> CheckoutSession:
    return workflow.submit_shipping(await verified_session(workflow, identity), identity)


class TestShippingStep:
    def test_start_prefills_country_and_delivery_date(self, workflow):
        session = workflow.start()

        assert session.step == CheckoutStep.SHIPPING
        assert session.shipping.country == "India"
        assert session.shipping.delivery_date is not None

    def test_unverified_contact_keeps_shipping(self, workflow, identity):
        session = workflow.update_shipping(workflow.start(), identity, FILLED)
        session = workflow.submit_shipping(session, identity)

        assert session.step == CheckoutStep.SHIPPING
        assert session.errors == {"verification": VERIFICATION_REQUIRED}

    def test_client_asserted_flags_are_ignored(self, workflow, identity):
        session = workflow.update_shipping(workflow.start(), identity, FILLED)
        session = session.model_copy(update={"email_verified": True, "phone_verified": True})

        assert workflow.submit_shipping(session, identity).step == CheckoutStep.SHIPPING

    async def test_verified_contact_moves_to_payment(self, workflow, identity):
        session = await verified_session(workflow, identity)
        assert session.email_verified and session.phone_verified

        session = workflow.submit_shipping(session, identity)
        assert session.step == CheckoutStep.PAYMENT
        assert session.errors == {}

    async def test_editing_email_resets_verification(self, workflow, identity):
        session = await verified_session(workflow, identity)

        session = workflow.update_shipping(session, identity, {"email": "other@example.com"})
        assert session.email_verified is False
        assert session.phone_verified is True
        assert workflow.submit_shipping(session, identity).step == CheckoutStep.SHIPPING

    async def test_stale_proof_does_not_verify_new_value(self, workflow, identity):
        session = workflow.update_shipping(workflow.start(), identity, FILLED)
        verified = await workflow.verify(session, identity, VerificationChannel.EMAIL)
        # The edit lands before the verification result is applied
        edited = workflow.update_shipping(session, identity, {"email": "other@example.com"})
        stale = edited.model_copy(update={"email_proof": verified.email_proof})

        assert workflow.refresh(stale, identity).email_verified is False

    async def test_proofs_do_not_carry_over_to_another_identity(self, workflow, identity):
        session = await verified_session(workflow, identity)
        other = Identity(id="u2", role=Role.CUSTOMER)

        replayed = workflow.refresh(session, other)
        assert replayed.email_verified is False
        assert replayed.phone_verified is False
        assert workflow.submit_shipping(session, other).errors == {"verification": VERIFICATION_REQUIRED}

    async def test_verify_rejects_malformed_value(self, workflow, identity):
        session = workflow.update_shipping(workflow.start(), identity, {**FILLED, "phone": "12ab"})
        session = await workflow.verify(session, identity, VerificationChannel.PHONE)

        assert session.phone_verified is False
        assert session.phone_proof is None
        assert "phone" in session.errors

    async def test_field_errors_are_reported(self, workflow, identity):
        session = workflow.update_shipping(workflow.start(), identity, {**FILLED, "email": "bad", "pincode": ""})
        session = workflow.submit_shipping(session, identity)

        assert session.step == CheckoutStep.SHIPPING
        assert session.errors["email"] == "Please enter a valid email address."
        assert session.errors["pincode"] == "PIN code is required"

    async def test_edits_require_shipping_step(self, workflow, identity):
        session = await payment_session(workflow, identity)

        with pytest.raises(ValidationException):
            workflow.update_shipping(session, identity, {"city": "Mysuru"})


class TestNavigation:
    async def test_back_keeps_data_and_flags(self, workflow, identity):
        session = await payment_session(workflow, identity)

        session = workflow.back(session, identity)
        assert session.step == CheckoutStep.SHIPPING
        assert session.shipping.email == FILLED["email"]
        assert session.email_verified and session.phone_verified


class TestPaymentStep:
    async def test_requires_payment_method(self, workflow, identity):
        session = await payment_session(workflow, identity)

        session = await workflow.submit_payment(session, identity, None)
        assert session.step == CheckoutStep.PAYMENT
        assert session.errors == {"paymentMethod": PAYMENT_METHOD_REQUIRED}

    async def test_cannot_pay_from_shipping(self, workflow, identity):
        with pytest.raises(ValidationException):
            await workflow.submit_payment(workflow.start(), identity, PaymentMethod.UPI)

    async def test_forged_payment_step_is_sent_back(self, workflow, identity):
        session = workflow.update_shipping(workflow.start(), identity, FILLED)
        session = session.model_copy(update={"step": CheckoutStep.PAYMENT})

        session = await workflow.submit_payment(session, identity, PaymentMethod.UPI)
        assert session.step == CheckoutStep.SHIPPING
        assert session.errors == {"verification": VERIFICATION_REQUIRED}

    async def test_completes_with_order(self, workflow, identity, cart):
        await cart.add("u1", "p1", 3)
        session = await payment_session(workflow, identity)

        session = await workflow.submit_payment(session, identity, PaymentMethod.UPI)

        assert session.step == CheckoutStep.COMPLETED
        assert session.order.total == Decimal("2097")
        assert session.order.payment_method == PaymentMethod.UPI
        assert await cart.snapshot("u1") == {}

    async def test_double_submission_places_one_order(self, workflow, identity, cart, db):
        await cart.add("u1", "p1", 3)
        session = await payment_session(workflow, identity)

        results = await asyncio.gather(
            workflow.submit_payment(session, identity, PaymentMethod.UPI),
            workflow.submit_payment(session, identity, PaymentMethod.UPI),
        )

        assert sorted(r.step.value for r in results) == ["completed", "failed"]
        assert await db.orders.count_documents({"user_id": "u1"}) == 1
        assert await cart.snapshot("u1") == {}

    async def test_failure_surfaces_message_and_allows_retry(self, workflow, identity, cart):
        session = await payment_session(workflow, identity)

        failed = await workflow.submit_payment(session, identity, PaymentMethod.CARD)
        assert failed.step == CheckoutStep.FAILED
        assert failed.error == "Cart is empty"

        await cart.add("u1", "p2", 1)
        retried = await workflow.submit_payment(failed, identity, None)
        assert retried.step == CheckoutStep.COMPLETED
        assert retried.order.payment_method == PaymentMethod.CARD

    async def test_unavailable_product_fails(self, workflow, identity, cart):
        await cart.add("u1", "p-retired", 1)
        session = await payment_session(workflow, identity)

        session = await workflow.submit_payment(session, identity, PaymentMethod.UPI)
        assert session.step == CheckoutStep.FAILED
        assert session.error == "Product p-retired is unavailable"

class TestCheckoutEndpoints:
    def test_full_scenario(self, client):
        headers = auth_headers("u1")
        client.post("/cart", json={"productId": "p1", "quantity": 1}, headers=headers)
        client.post("/cart", json={"productId": "p1", "quantity": 2}, headers=headers)
        assert [(i["productId"], i["quantity"]) for i in client.get("/cart", headers=headers).json()["items"]] == [("p1", 3)]

        assert client.post("/wishlist", json={"productId": "p1"}, headers=headers).json()["action"] == "added"
        assert client.post("/wishlist", json={"productId": "p1"}, headers=headers).json()["action"] == "removed"
        assert client.get("/wishlist", headers=headers).json()["items"] == []

        session = client.post("/checkout/start", headers=headers).json()
        assert session["step"] == "shipping"

        changes = {
            "fullName": "Asha Rao",
            "email": "asha@example.com",
            "phone": "9876543210",
            "address": "12 MG Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "pincode": "560001",
        }
        session = client.post(
            "/checkout/shipping", json={"session": session, "changes": changes, "submit": False}, headers=headers
        ).json()
        assert session["emailVerified"] is False

        blocked = client.post("/checkout/shipping", json={"session": session}, headers=headers).json()
        assert blocked["step"] == "shipping"
        assert blocked["errors"] == {"verification": VERIFICATION_REQUIRED}

        session = client.post("/checkout/verify", json={"session": session, "channel": "email"}, headers=headers).json()
        session = client.post("/checkout/verify", json={"session": session, "channel": "phone"}, headers=headers).json()
        assert session["emailVerified"] is True and session["phoneVerified"] is True

        session = client.post("/checkout/shipping", json={"session": session}, headers=headers).json()
        assert session["step"] == "payment"

        session = client.post("/checkout/back", json={"session": session}, headers=headers).json()
        assert session["step"] == "shipping"
        assert session["shipping"]["city"] == "Bengaluru"
        session = client.post("/checkout/shipping", json={"session": session}, headers=headers).json()

        session = client.post(
            "/checkout/payment", json={"session": session, "paymentMethod": "upi"}, headers=headers
        ).json()
        assert session["step"] == "completed"
        assert Decimal(str(session["order"]["total"])) == Decimal("2097")
        assert client.get("/cart", headers=headers).json()["items"] == []

    def test_editing_email_over_http_resets_flag(self, client):
        headers = auth_headers("u1")
        session = client.post("/checkout/start", headers=headers).json()
        session = client.post(
            "/checkout/shipping",
            json={"session": session, "changes": {"email": "asha@example.com"}, "submit": False},
            headers=headers,
        ).json()
        session = client.post("/checkout/verify", json={"session": session, "channel": "email"}, headers=headers).json()
        assert session["emailVerified"] is True

        session = client.post(
            "/checkout/shipping",
            json={"session": session, "changes": {"email": "asha.rao@example.com"}, "submit": False},
            headers=headers,
        ).json()
        assert session["emailVerified"] is False
        assert session["emailProof"] is None

    def test_session_replayed_by_another_shopper_is_unverified(self, client):
        owner = auth_headers("u1")
        session = client.post("/checkout/start", headers=owner).json()
        session = client.post(
            "/checkout/shipping",
            json={"session": session, "changes": {"email": "asha@example.com"}, "submit": False},
            headers=owner,
        ).json()
        session = client.post("/checkout/verify", json={"session": session, "channel": "email"}, headers=owner).json()
        assert session["emailVerified"] is True

        replayed = client.post("/checkout/back", json={"session": session}, headers=auth_headers("u2")).json()
        assert replayed["emailVerified"] is False
