"""
Bearer tokens identifying FarmWork Hub users
Issued by the hub's auth service, verified here with PyJWT
"""

from datetime import datetime, timedelta, UTC
from typing import Any, Dict, Optional

import jwt
import structlog

logger = structlog.get_logger(__name__)

ISSUER = "farmwork-hub"
ACCESS_TOKEN_TYPE = "access"
BEARER_PREFIX = "Bearer "


class JWTError(Exception):
    """A user token could not be issued or accepted"""


class JWTExpiredError(JWTError):
    pass


class JWTInvalidError(JWTError):
    pass


def create_jwt(payload: Dict[str, Any], secret_key: str,
               algorithm: str = "HS256",
               expires_in_minutes: int = 15) -> str:
    """Sign a payload with issued-at, expiry and issuer claims added"""
    issued_at = datetime.now(UTC)
    claims = {
        **payload,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=expires_in_minutes),
        "iss": ISSUER,
    }
    try:
        return jwt.encode(claims, secret_key, algorithm=algorithm)
    except (jwt.PyJWTError, TypeError, ValueError) as e:
        logger.error("Token signing failed", subject=payload.get("sub"), error=str(e))
        raise JWTError(f"Failed to sign token: {e}") from e


def verify_jwt(token: str, secret_key: str, algorithm: str = "HS256") -> Dict[str, Any]:
    """
    Decode a signed token, requiring exp, iat and sub claims

    Raises:
        JWTExpiredError: If the token is past its expiry
        JWTInvalidError: If the signature, format or claims are wrong
    """
    try:
        return jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            issuer=ISSUER,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        logger.info("Expired user token presented")
        raise JWTExpiredError("Token has expired") from e
    except jwt.InvalidTokenError as e:
        logger.info("Invalid user token presented", error=str(e))
        raise JWTInvalidError(f"Invalid token: {e}") from e


def create_access_token(user_id: str, secret_key: str,
                        algorithm: str = "HS256",
                        expires_in_minutes: int = 15) -> str:
    return create_jwt({"sub": str(user_id), "type": ACCESS_TOKEN_TYPE},
                      secret_key, algorithm, expires_in_minutes)


def verify_access_token(token: str, secret_key: str, algorithm: str = "HS256") -> str:
    """Return the user id carried by a valid access token"""
    claims = verify_jwt(token, secret_key, algorithm)
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise JWTInvalidError("Token is not an access token")
    return str(claims["sub"])


def extract_bearer_token(authorization_header: Optional[str]) -> str:
    """Token part of an `Authorization: Bearer <token>` header"""
    if not authorization_header or not authorization_header.startswith(BEARER_PREFIX):
        raise JWTInvalidError("Missing bearer token")
    token = authorization_header[len(BEARER_PREFIX):].strip()
    if not token:
        raise JWTInvalidError("Missing bearer token")
    return token
