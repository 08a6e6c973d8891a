import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from apps.api.app.core.config import settings
from apps.api.app.core.errors import ConfigurationMissing, ExpiredToken, InvalidToken
from apps.api.app.core.time import utcnow
from apps.api.app.schemas.auth import AccessTokenClaims


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_BYTES = 32


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def require_signing_secret() -> str:
    secret = settings.SECRET_KEY
    if not secret:
        raise ConfigurationMissing("SECRET_KEY must be configured to sign access tokens")
    return secret


def sign_access_token(
    subject: str,
    role: str,
    tenant_id: Optional[str],
    ttl_seconds: Optional[int] = None,
    issued_at: Optional[datetime] = None,
) -> str:
    secret = require_signing_secret()
    ttl = settings.ACCESS_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    iat = issued_at or utcnow()
    claims = {
        "sub": subject,
        "role": role,
        "hotel_id": tenant_id,
        "typ": ACCESS_TOKEN_TYPE,
        "iat": iat,
        "exp": iat + timedelta(seconds=ttl),
    }
    return jwt.encode(claims, secret, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> AccessTokenClaims:
    secret = require_signing_secret()
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except ExpiredSignatureError as exc:
        raise ExpiredToken("access token expired") from exc
    except JWTError as exc:
        raise InvalidToken("access token rejected") from exc

    if payload.get("typ") != ACCESS_TOKEN_TYPE:
        raise InvalidToken("not an access token")
    if not payload.get("sub") or not payload.get("role"):
        raise InvalidToken("access token missing subject or role")
    if "exp" not in payload:
        raise InvalidToken("access token missing expiry")

    return AccessTokenClaims(
        subject=payload["sub"],
        role=payload["role"],
        tenant_id=payload.get("hotel_id"),
        issued_at=payload.get("iat"),
        expires_at=payload["exp"],
    )


def generate_refresh_token() -> str:
    # 256 bits from the OS CSPRNG, hex encoded (64 chars).
    return secrets.token_hex(REFRESH_TOKEN_BYTES)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
