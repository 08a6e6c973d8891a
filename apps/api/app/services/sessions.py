"""Session issuing and refresh-token lifecycle.

A refresh token row is ``Active`` until ``revoked_at`` is set (logout,
rotation or detected reuse), which is terminal. Expiry is derived from
``expires_at`` at read time and is never written.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from apps.api.app.core.config import settings
from apps.api.app.core.errors import RefreshTokenExpired, RefreshTokenNotFound, RevokedToken
from apps.api.app.core.security import (
    generate_refresh_token,
    hash_refresh_token,
    sign_access_token,
)
from apps.api.app.core.time import as_utc, utcnow
from apps.api.app.schemas.auth import IssuedSession, RefreshedSession
from apps.api.app.services.audit import log_auth_event
from apps.api.app.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


def _new_refresh_token(
    store: CredentialStore,
    user_id: str,
    role: str,
    hotel_id: Optional[str],
) -> tuple[str, str]:
    token = generate_refresh_token()
    token_hash = hash_refresh_token(token)
    store.create_refresh_token(
        token_hash=token_hash,
        user_id=user_id,
        role=role,
        hotel_id=hotel_id,
        expires_at=utcnow() + timedelta(days=settings.REFRESH_TOKEN_TTL_DAYS),
    )
    return token, token_hash


def issue_session(
    db: Session,
    user_id: str,
    role: str,
    hotel_id: Optional[str],
) -> IssuedSession:
    store = CredentialStore(db)
    access_token = sign_access_token(user_id, role, hotel_id)
    refresh_token, token_hash = _new_refresh_token(store, user_id, role, hotel_id)
    log_auth_event(
        db,
        action="auth.session.issued",
        user_id=user_id,
        hotel_id=hotel_id,
        token_hash=token_hash,
    )
    db.commit()
    return IssuedSession(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.ACCESS_TOKEN_TTL_SECONDS,
    )


def refresh_session(
    db: Session,
    refresh_token: str,
    rotate: Optional[bool] = None,
) -> RefreshedSession:
    """Mint a new access token from a stored refresh token.

    Claims come from the refresh token row as captured at login, so a tenant
    or role change requires a new login. With rotation enabled the presented
    token is revoked and a replacement is returned; of two concurrent callers
    only the one that wins the conditional revoke succeeds.
    """
    rotate = settings.REFRESH_TOKEN_ROTATE_ON_USE if rotate is None else rotate
    store = CredentialStore(db)
    token_hash = hash_refresh_token(refresh_token)

    row = store.find_refresh_token(token_hash)
    if row is None:
        raise RefreshTokenNotFound("refresh token not found")
    if row.revoked_at is not None:
        if row.replaced_by_hash:
            _record_reuse(db, row)
        raise RevokedToken("refresh token revoked")
    now = utcnow()
    if as_utc(row.expires_at) <= now:
        raise RefreshTokenExpired("refresh token expired")

    user_id, role, hotel_id = row.user_id, row.role, row.hotel_id
    new_refresh_token = None
    if rotate:
        new_refresh_token = generate_refresh_token()
        new_hash = hash_refresh_token(new_refresh_token)
        # The conditional revoke must be the first write of this transaction.
        if not store.revise_refresh_token(token_hash, now, replaced_by_hash=new_hash):
            db.rollback()
            raise RevokedToken("refresh token revoked")
        store.create_refresh_token(
            token_hash=new_hash,
            user_id=user_id,
            role=role,
            hotel_id=hotel_id,
            expires_at=now + timedelta(days=settings.REFRESH_TOKEN_TTL_DAYS),
        )

    access_token = sign_access_token(user_id, role, hotel_id)
    log_auth_event(
        db,
        action="auth.refresh.success",
        user_id=user_id,
        hotel_id=hotel_id,
        token_hash=token_hash,
        details={"rotated": bool(rotate)},
    )
    db.commit()
    return RefreshedSession(
        access_token=access_token,
        expires_in=settings.ACCESS_TOKEN_TTL_SECONDS,
        refresh_token=new_refresh_token,
    )


def _record_reuse(db: Session, row) -> None:
    logger.warning("Rotated refresh token presented again user_id=%s", row.user_id)
    log_auth_event(
        db,
        action="auth.refresh.reuse_detected",
        user_id=row.user_id,
        hotel_id=row.hotel_id,
        token_hash=row.token_hash,
    )
    db.commit()


def revoke_session(db: Session, refresh_token: str, user_id: Optional[str] = None) -> bool:
    """Revoke a refresh token. Unknown or already revoked tokens are a no-op."""
    store = CredentialStore(db)
    token_hash = hash_refresh_token(refresh_token)
    row = store.find_refresh_token(token_hash)
    if row is None:
        return False
    if user_id is not None and row.user_id != user_id:
        return False
    revoked = store.revise_refresh_token(token_hash, utcnow())
    if revoked:
        log_auth_event(
            db,
            action="auth.logout",
            user_id=row.user_id,
            hotel_id=row.hotel_id,
            token_hash=token_hash,
        )
    db.commit()
    return revoked


def purge_expired_refresh_tokens(db: Session) -> int:
    retention = max(0, int(settings.REFRESH_TOKEN_RETENTION_DAYS))
    cutoff = utcnow() - timedelta(days=retention)
    removed = CredentialStore(db).purge_refresh_tokens(cutoff)
    log_auth_event(
        db,
        action="auth.refresh_tokens.purged",
        details={"removed": removed, "cutoff": cutoff.isoformat()},
    )
    db.commit()
    return removed
