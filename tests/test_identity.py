from datetime import timedelta

import pytest
from jose import jwt

from shared.utils import create_access_token, UnauthorizedException
from commerce.identity import resolve
from commerce.models import Role
from tests.conftest import auth_headers


def bearer(payload: dict, **kwargs) -> str:
    return f"Bearer {create_access_token(payload, **kwargs)}"


class TestResolve:
    def test_resolves_customer(self):
        identity = resolve(bearer({"sub": "u1", "role": "customer"}))
        assert identity.id == "u1"
        assert identity.role == Role.CUSTOMER

    def test_resolves_reseller(self):
        assert resolve(bearer({"sub": "r1", "role": "reseller"})).role == Role.RESELLER

    @pytest.mark.parametrize("credential", [None, "", "Bearer", "Bearer   ", "Basic dXNlcjpwYXNz", "token-without-scheme"])
    def test_rejects_missing_or_malformed(self, credential):
        with pytest.raises(UnauthorizedException):
            resolve(credential)

    def test_rejects_bad_signature(self):
        token = jwt.encode({"sub": "u1", "role": "customer"}, "another-secret", algorithm="HS256")
        with pytest.raises(UnauthorizedException):
            resolve(f"Bearer {token}")

    def test_rejects_expired_token(self):
        with pytest.raises(UnauthorizedException):
            resolve(bearer({"sub": "u1", "role": "customer"}, expires_delta=timedelta(minutes=-1)))

    def test_rejects_unknown_role(self):
        with pytest.raises(UnauthorizedException):
            resolve(bearer({"sub": "u1", "role": "admin"}))

    def test_rejects_missing_subject(self):
        with pytest.raises(UnauthorizedException):
            resolve(bearer({"role": "customer"}))


class TestGate:
    @pytest.mark.parametrize("method, path", [
        ("GET", "/cart"),
        ("POST", "/cart"),
        ("PUT", "/cart"),
        ("DELETE", "/cart"),
        ("GET", "/wishlist"),
        ("POST", "/orders"),
        ("POST", "/checkout/start"),
    ])
    def test_every_route_requires_credentials(self, client, method, path):
        response = client.request(method, path, json={"productId": "p1", "quantity": 1})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["success"] is False

    def test_request_id_is_echoed(self, client):
        response = client.get("/cart", headers={**auth_headers(), "X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
