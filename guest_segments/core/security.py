"""
Bearer token handling for the segmentation API.
Tokens are issued by the platform's auth service; this module verifies them.
The encoder exists for tooling and tests.
"""
from datetime import datetime, timedelta
from typing import Optional
import uuid

import jwt

from guest_segments.config import settings

ACCESS_TOKEN_TYPE = "access"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Encode an access token.

    Args:
        data: Claims; must include user_id
        expires_delta: Lifetime, ACCESS_TOKEN_EXPIRE_MINUTES by default
    """
    issued_at = datetime.utcnow()
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    claims = dict(data)
    claims.update({
        "exp": issued_at + lifetime,
        "iat": issued_at,
        "type": ACCESS_TOKEN_TYPE,
        "jti": str(uuid.uuid4())
    })
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: str, token_type: str = ACCESS_TOKEN_TYPE) -> Optional[dict]:
    """
    Decode a token and check its type.

    Returns:
        Claims if the signature, expiry and type are valid, None otherwise
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload
