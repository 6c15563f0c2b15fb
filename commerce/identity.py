"""Identity gate: resolves a bearer credential to the acting identity."""
from typing import Optional
from fastapi import Header, Request
from pydantic import ValidationError

from shared.utils import verify_token, UnauthorizedException
from commerce.models import Identity


def resolve(credential: Optional[str]) -> Identity:
    """
    Resolve an `Authorization` header value to an Identity.

    Raises UnauthorizedException when the header is absent, is not a
    bearer credential, or the token does not verify.
    """
    if not credential:
        raise UnauthorizedException("Missing authorization credentials")

    scheme, _, token = credential.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedException("Invalid authentication credentials")

    payload = verify_token(token)
    try:
        return Identity(id=payload.get("sub"), role=payload.get("role"))
    except ValidationError:
        raise UnauthorizedException("Invalid authentication credentials")


async def get_current_identity(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    identity = resolve(authorization)
    request.state.user_id = identity.id
    return identity
