"""
Authentication Service

Issues and verifies the JWT access tokens carried in the
Authorization: Bearer header.

Users log in through the main Kodisha API; this service only needs to
verify the token and read the user id from it. create_access_token is kept
for scripts and tests that need to mint a token for an existing user.
"""

import logging
from datetime import timedelta
from typing import Optional

import jwt

from database.models import utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30  # 30 minutes default


def create_access_token(data: dict, secret_key: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Dict containing user info (user_id, email, role)
        secret_key: JWT_SECRET_KEY
        expires_delta: Optional custom expiration time

    Returns:
        JWT token string
    """
    to_encode = data.copy()

    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> Optional[dict]:
    """
    Decode and verify a JWT token.

    Returns:
        Decoded token data or None if invalid or expired
    """
    try:
        return jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return None
    except jwt.InvalidTokenError:
        return None
