"""Signed bearer tokens identifying a user."""

import hashlib
import hmac

from .errors import AuthenticationError


def _sign(user_id: str, secret: str) -> str:
    return hmac.new(secret.encode(), user_id.encode(), hashlib.sha256).hexdigest()


def issue_token(user_id: str, secret: str) -> str:
    """Token format: '<user_id>.<hex hmac-sha256 of user_id>'."""
    return f"{user_id}.{_sign(user_id, secret)}"


def verify_token(token: str, secret: str) -> str:
    """
    Return the user id a token was issued for.

    Raises:
        AuthenticationError: If the token is malformed or its signature is wrong.
    """
    user_id, sep, signature = token.rpartition(".")
    if not sep or not user_id or not signature:
        raise AuthenticationError("malformed token")
    if not hmac.compare_digest(_sign(user_id, secret), signature):
        raise AuthenticationError("bad token signature")
    return user_id


def parse_authorization(header: str | None) -> str:
    """Extract the token from an 'Authorization: Bearer <token>' header."""
    if not header:
        raise AuthenticationError("missing Authorization header")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("expected a Bearer token")
    return token.strip()
