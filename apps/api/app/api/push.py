from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from apps.api.app.api.deps import get_current_claims
from apps.api.app.core.errors import InvalidSubscription
from apps.api.app.db.session import get_db
from apps.api.app.schemas.auth import AccessTokenClaims
from apps.api.app.schemas.push import (
    DeviceTokenRequest,
    WebPushSubscribeRequest,
    WebPushUnsubscribeRequest,
)
from apps.api.app.services.dispatcher import get_web_push_channel
from apps.api.app.services.notifications import push_test_payload, schedule_notification
from apps.api.app.services.push_registry import PushSubscriptionRegistry
from apps.worker.app.engine.channels import ChannelKind

router = APIRouter(prefix="/push", tags=["push"])


@router.get("/public-key")
def public_key():
    channel = get_web_push_channel()
    return {"publicKey": channel.public_key if channel.available else ""}


@router.post("/web/subscribe")
def subscribe_web(
    payload: WebPushSubscribeRequest,
    user_agent: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    claims: AccessTokenClaims = Depends(get_current_claims),
):
    keys = payload.keys
    try:
        PushSubscriptionRegistry(db).register_web(
            claims.subject,
            payload.endpoint or "",
            keys.p256dh if keys else None,
            keys.auth if keys else None,
            user_agent=user_agent,
        )
    except InvalidSubscription as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"invalid_subscription: {exc}",
        )
    return {"success": True}


@router.post("/web/unsubscribe")
def unsubscribe_web(
    payload: WebPushUnsubscribeRequest,
    db: Session = Depends(get_db),
    claims: AccessTokenClaims = Depends(get_current_claims),
):
    PushSubscriptionRegistry(db).unsubscribe(ChannelKind.WEB, payload.endpoint, user_id=claims.subject)
    return {"success": True}


@router.delete("/web/unsubscribe")
def unsubscribe_web_by_query(
    endpoint: str = Query(min_length=1),
    db: Session = Depends(get_db),
    claims: AccessTokenClaims = Depends(get_current_claims),
):
    PushSubscriptionRegistry(db).unsubscribe(ChannelKind.WEB, endpoint, user_id=claims.subject)
    return {"success": True}


@router.post("/devices")
def register_device(
    payload: DeviceTokenRequest,
    db: Session = Depends(get_db),
    claims: AccessTokenClaims = Depends(get_current_claims),
):
    registered = PushSubscriptionRegistry(db).register_mobile(
        claims.subject,
        payload.device_token,
        payload.platform,
    )
    return {"success": True, "registered": registered, "deviceToken": payload.device_token}


@router.delete("/devices")
def unregister_device(
    device_token: str = Query(alias="deviceToken", min_length=1),
    db: Session = Depends(get_db),
    claims: AccessTokenClaims = Depends(get_current_claims),
):
    PushSubscriptionRegistry(db).unsubscribe(ChannelKind.MOBILE, device_token, user_id=claims.subject)
    return {"success": True}


@router.post("/test")
def send_test_push(
    background_tasks: BackgroundTasks,
    claims: AccessTokenClaims = Depends(get_current_claims),
):
    payload = push_test_payload(claims.subject)
    schedule_notification(background_tasks, [claims.subject], payload)
    return {"success": True, "eventKey": payload.event_key}
