from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from apps.api.app.api.deps import require_role, unauthenticated
from apps.api.app.core.errors import AuthenticationError
from apps.api.app.core.security import verify_password
from apps.api.app.core.time import utcnow
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User
from apps.api.app.schemas.auth import (
    AccessTokenClaims,
    LogoutRequest,
    MobileLoginRequest,
    MobileRefreshRequest,
)
from apps.api.app.services.audit import log_auth_event
from apps.api.app.services.push_registry import PushSubscriptionRegistry
from apps.api.app.services.sessions import (
    issue_session,
    purge_expired_refresh_tokens,
    refresh_session,
    revoke_session,
)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/mobile/login")
def mobile_login(
    payload: MobileLoginRequest,
    db: Session = Depends(get_db),
):
    user = (
        db.execute(select(User).where(func.lower(User.email) == payload.email.lower()))
        .scalars()
        .first()
    )
    if not user or not verify_password(payload.password, user.hashed_password):
        log_auth_event(
            db,
            action="auth.login.failed",
            user_id=user.id if user else None,
            details={"channel": "mobile"},
        )
        db.commit()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    user.last_login_at = utcnow()
    db.flush()
    session = issue_session(db, user.id, user.role, user.hotel_id)

    if payload.device_token:
        PushSubscriptionRegistry(db).register_mobile(
            user.id,
            payload.device_token,
            payload.platform,
        )

    return {
        "tokenType": "Bearer",
        "accessToken": session.access_token,
        "expiresIn": session.expires_in,
        "refreshToken": session.refresh_token,
        "user": {"id": user.id, "role": user.role, "hotelId": user.hotel_id},
    }


@router.post("/mobile/refresh")
def mobile_refresh(
    payload: MobileRefreshRequest,
    db: Session = Depends(get_db),
):
    try:
        refreshed = refresh_session(db, payload.refresh_token)
    except AuthenticationError:
        raise unauthenticated()

    body = {
        "tokenType": "Bearer",
        "accessToken": refreshed.access_token,
        "expiresIn": refreshed.expires_in,
    }
    if refreshed.refresh_token:
        body["refreshToken"] = refreshed.refresh_token
    return body


@router.post("/logout")
def logout(
    payload: LogoutRequest,
    db: Session = Depends(get_db),
):
    if payload.refresh_token:
        revoke_session(db, payload.refresh_token)
    return {"message": "Session revoked"}


@router.post("/maintenance/purge-refresh-tokens")
def purge_refresh_tokens(
    db: Session = Depends(get_db),
    claims: AccessTokenClaims = Depends(require_role("super_admin")),
):
    removed = purge_expired_refresh_tokens(db)
    return {"removed": removed}
