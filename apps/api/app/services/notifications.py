import logging
from typing import Any, Iterable, Optional

from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.core.time import utcnow
from apps.api.app.db.session import SessionLocal
from apps.api.app.models.user import User
from apps.api.app.services.dispatcher import DispatchResult, build_dispatcher
from apps.worker.app.engine.channels import NotificationPayload

logger = logging.getLogger(__name__)

STAFF_ROLES = ("hotel_staff", "hotel_admin")


def request_created_payload(
    request_id: str,
    guest_name: str,
    room_number: str,
    service_name: str,
    title: str,
    priority: str = "normal",
) -> NotificationPayload:
    return NotificationPayload(
        title=f"New {priority} priority request",
        body=f'{guest_name} in Room {room_number} requested {service_name}: "{title}"',
        event_key=f"request-created:{request_id}",
        data={
            "serviceRequestId": request_id,
            "priority": priority,
            "roomNumber": room_number,
            "target": "/dashboard/staff-requests",
        },
    )


def request_status_payload(request_id: str, status: str, service_name: str) -> NotificationPayload:
    readable = status.replace("_", " ").lower()
    return NotificationPayload(
        title="Request update",
        body=f"Your {service_name} request is now {readable}",
        event_key=f"request-status:{request_id}:{status}",
        data={
            "serviceRequestId": request_id,
            "status": status,
            "target": "/guest/requests",
        },
    )


def push_test_payload(user_id: str, data: Optional[dict[str, Any]] = None) -> NotificationPayload:
    stamp = int(utcnow().timestamp() * 1000)
    return NotificationPayload(
        title="Test notification",
        body="This is a test push",
        event_key=f"test:{user_id}:{stamp}",
        data=data or {"target": "/dashboard/requests"},
    )


def notify_user(db: Session, user_id: str, payload: NotificationPayload) -> DispatchResult:
    return build_dispatcher(db).notify(user_id, payload)


def notify_users(db: Session, user_ids: Iterable[str], payload: NotificationPayload) -> DispatchResult:
    return build_dispatcher(db).notify_many(list(user_ids), payload)


def dispatch_in_new_session(user_ids: list[str], payload: NotificationPayload) -> DispatchResult:
    # Runs after the triggering request has committed, on its own session.
    db = SessionLocal()
    try:
        return notify_users(db, user_ids, payload)
    finally:
        db.close()


def schedule_notification(
    background_tasks: BackgroundTasks,
    user_ids: Iterable[str],
    payload: NotificationPayload,
) -> None:
    recipients = [user_id for user_id in user_ids if user_id]
    if not recipients:
        return
    background_tasks.add_task(dispatch_in_new_session, recipients, payload)
    logger.debug("Scheduled event=%s for %s recipients", payload.event_key, len(recipients))


def hotel_staff_ids(db: Session, hotel_id: str) -> list[str]:
    return list(
        db.execute(
            select(User.id).where(User.hotel_id == hotel_id, User.role.in_(STAFF_ROLES))
        ).scalars()
    )


def notify_hotel_staff(db: Session, hotel_id: str, payload: NotificationPayload) -> DispatchResult:
    staff = hotel_staff_ids(db, hotel_id)
    if not staff:
        logger.info("No staff to notify hotel_id=%s event=%s", hotel_id, payload.event_key)
    return notify_users(db, staff, payload)


def schedule_hotel_staff_notification(
    db: Session,
    background_tasks: BackgroundTasks,
    hotel_id: str,
    payload: NotificationPayload,
) -> list[str]:
    """Resolve staff on the request's session, then deliver after the response."""
    staff = hotel_staff_ids(db, hotel_id)
    schedule_notification(background_tasks, staff, payload)
    return staff
