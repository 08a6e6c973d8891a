from fastapi import BackgroundTasks

from apps.api.app.models.user import User
from apps.api.app.services import dispatcher
from apps.api.app.services.notifications import (
    hotel_staff_ids,
    notify_hotel_staff,
    push_test_payload,
    request_created_payload,
    request_status_payload,
    schedule_hotel_staff_notification,
    schedule_notification,
)
from apps.api.app.services.push_registry import PushSubscriptionRegistry
from apps.worker.app.engine.channels import ChannelKind
from tests.doubles import RecordingChannel


def test_request_created_payload_is_keyed_by_request():
    payload = request_created_payload(
        "req-1",
        guest_name="Ana",
        room_number="204",
        service_name="Housekeeping",
        title="Extra towels",
        priority="high",
    )

    assert payload.event_key == "request-created:req-1"
    assert payload.title == "New high priority request"
    assert "Room 204" in payload.body
    assert payload.as_web_message()["tag"] == "request-created:req-1"
    assert payload.as_mobile_data()["eventKey"] == "request-created:req-1"


def test_status_payloads_differ_per_status():
    in_progress = request_status_payload("req-1", "IN_PROGRESS", "Spa")
    completed = request_status_payload("req-1", "COMPLETED", "Spa")

    assert in_progress.event_key != completed.event_key
    assert in_progress.body == "Your Spa request is now in progress"


def test_push_test_payload_targets_dashboard():
    payload = push_test_payload("user-1")
    assert payload.event_key.startswith("test:user-1:")
    assert payload.data == {"target": "/dashboard/requests"}


def test_schedule_notification_skips_empty_recipients():
    tasks = BackgroundTasks()
    schedule_notification(tasks, [], push_test_payload("user-1"))
    schedule_notification(tasks, [None, ""], push_test_payload("user-1"))
    assert tasks.tasks == []

    schedule_notification(tasks, ["user-1"], push_test_payload("user-1"))
    assert len(tasks.tasks) == 1


def _seed_hotel(db):
    for user_id, role, hotel_id in [
        ("staff-1", "hotel_staff", "hotel-1"),
        ("admin-1", "hotel_admin", "hotel-1"),
        ("guest-1", "guest", "hotel-1"),
        ("staff-2", "hotel_staff", "hotel-2"),
    ]:
        db.add(
            User(
                id=user_id,
                email=f"{user_id}@test.com",
                hashed_password="x",
                role=role,
                hotel_id=hotel_id,
            )
        )
    db.commit()


def test_hotel_staff_ids_pick_staff_and_admins_of_that_hotel(db):
    _seed_hotel(db)

    assert sorted(hotel_staff_ids(db, "hotel-1")) == ["admin-1", "staff-1"]
    assert hotel_staff_ids(db, "hotel-3") == []


def test_notify_hotel_staff_reaches_only_staff_devices(db, monkeypatch):
    _seed_hotel(db)
    registry = PushSubscriptionRegistry(db)
    for user_id in ("staff-1", "admin-1", "guest-1", "staff-2"):
        registry.register_mobile(user_id, f"ExponentPushToken[{user_id}]")
    mobile = RecordingChannel(ChannelKind.MOBILE)
    monkeypatch.setattr(dispatcher, "get_web_push_channel", lambda: RecordingChannel(ChannelKind.WEB))
    monkeypatch.setattr(dispatcher, "get_mobile_push_channel", lambda: mobile)

    payload = request_created_payload("req-9", "Ana", "204", "Housekeeping", "Extra towels")
    result = notify_hotel_staff(db, "hotel-1", payload)

    assert result.delivered == 2
    assert sorted(mobile.sent_identities) == [
        "ExponentPushToken[admin-1]",
        "ExponentPushToken[staff-1]",
    ]


def test_schedule_hotel_staff_notification_queues_staff(db):
    _seed_hotel(db)
    tasks = BackgroundTasks()
    payload = request_created_payload("req-9", "Ana", "204", "Housekeeping", "Extra towels")

    staff = schedule_hotel_staff_notification(db, tasks, "hotel-2", payload)

    assert staff == ["staff-2"]
    assert len(tasks.tasks) == 1
    assert tasks.tasks[0].args == (["staff-2"], payload)
