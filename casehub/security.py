import hmac
import hashlib
import json
import time
from fastapi import HTTPException, Header
from casehub.config import settings


def canonical_body(body: dict | None) -> str:
    """
    JSON text that is both signed and sent, so the two can never diverge.
    GET requests sign an empty string.
    """
    if body is None:
        return ""
    return json.dumps(body, separators=(",", ":"))


def compute_signature(body: dict | None, timestamp: str, secret: str | None = None) -> str:
    message = f"{timestamp}{canonical_body(body)}".encode()
    key = (secret or settings.gateway_b_private_key).encode()
    return hmac.new(key, message, hashlib.sha512).hexdigest()


def signed_headers(body: dict | None) -> dict:
    """
    Authentication headers for a Gateway B API call.
    """
    timestamp = str(int(time.time()))
    return {
        "ApiPublic": settings.gateway_b_public_key,
        "Timestamp": timestamp,
        "Signature": compute_signature(body, timestamp),
        "Content-Type": "application/json",
    }


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    Guard for the /admin routes. Open when no bearer token is configured.
    """
    expected = settings.bearer_token
    if not expected:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), expected.encode()):
        raise HTTPException(
            status_code=401,
            detail="admin token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
