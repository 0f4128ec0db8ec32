"""
Connection token minting and verification (HS256 JWT)
"""
import time
from typing import Optional

try:
    import jwt
except ImportError:
    raise ImportError("pyjwt is required: pip install pyjwt")

from . import config
from .errors import AuthenticationFailed


def mint_token(identity: str, name: Optional[str] = None, ttl: Optional[int] = None) -> str:
    """
    Mint a connection token for a user

    Args:
        identity: Stable user identifier, stored as ``sub``
        name: Display name (optional)
        ttl: Lifetime in seconds, defaults to COLLAB_JWT_TTL

    Returns:
        JWT token string
    """
    now = int(time.time())
    payload = {
        "sub": identity,
        "name": name or identity,
        "iat": now,
        "nbf": now - 5,  # 5s clock skew tolerance
        "exp": now + (ttl if ttl is not None else config.JWT_TTL),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def verify_token(token: Optional[str]) -> str:
    """Return the user identity carried by ``token`` or raise AuthenticationFailed"""
    if not token:
        raise AuthenticationFailed("Authentication token missing")
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailed("Authentication token expired")
    except jwt.InvalidTokenError as e:
        raise AuthenticationFailed(f"Invalid authentication token: {e}")

    identity = claims.get("sub")
    if not identity:
        raise AuthenticationFailed("Authentication token has no subject")
    return identity


def token_from_request(request) -> Optional[str]:
    """Pull the token from ``?token=`` or an ``Authorization: Bearer`` header"""
    token = request.query.get("token")
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return None
