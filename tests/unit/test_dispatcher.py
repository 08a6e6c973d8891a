import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from apps.api.app.db.session import SessionLocal
from apps.api.app.models.device_token import DeviceToken
from apps.api.app.services.credential_store import CredentialStore
from apps.api.app.services.dispatcher import NotificationDispatcher
from apps.api.app.services.push_registry import PushSubscriptionRegistry
from apps.worker.app.engine.channels import (
    ChannelKind,
    DeliveryStatus,
    NotificationPayload,
)
from apps.worker.app.engine.expo_push_client import is_expo_push_token
from tests.doubles import RecordingChannel

ENDPOINT = "https://updates.push.services.mozilla.com/wpush/v2/abc"
EXPO_TOKEN = "ExponentPushToken[device-1]"

PAYLOAD = NotificationPayload(
    title="Request update",
    body="Your towels request is now completed",
    event_key="request-status:req-1:COMPLETED",
    data={"serviceRequestId": "req-1"},
)


@pytest.fixture()
def executor():
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


def _dispatcher(db, executor, web=None, mobile=None, send_timeout=2.0, max_concurrency=4):
    return NotificationDispatcher(
        registry=PushSubscriptionRegistry(db),
        web=web or RecordingChannel(ChannelKind.WEB, max_batch_size=1),
        mobile=mobile or RecordingChannel(ChannelKind.MOBILE, validator=is_expo_push_token),
        executor=executor,
        max_concurrency=max_concurrency,
        send_timeout=send_timeout,
    )


def test_user_without_endpoints_gets_empty_result(db, executor):
    web = RecordingChannel(ChannelKind.WEB, max_batch_size=1)
    mobile = RecordingChannel(ChannelKind.MOBILE)

    result = _dispatcher(db, executor, web, mobile).notify("user-1", PAYLOAD)

    assert result.delivered == 0
    assert result.no_recipients
    assert web.calls == [] and mobile.calls == []


def test_permanent_failure_deactivates_and_web_still_delivers(db, executor, web_keys):
    registry = PushSubscriptionRegistry(db)
    registry.register_web("user-1", ENDPOINT, *web_keys())
    registry.register_mobile("user-1", EXPO_TOKEN)
    web = RecordingChannel(ChannelKind.WEB, max_batch_size=1)
    mobile = RecordingChannel(
        ChannelKind.MOBILE,
        statuses={EXPO_TOKEN: DeliveryStatus.PERMANENT_FAILURE},
        validator=is_expo_push_token,
    )
    dispatcher = _dispatcher(db, executor, web, mobile)

    result = dispatcher.notify("user-1", PAYLOAD)

    assert result.delivered == 1
    assert result.permanently_failed == 1
    assert result.deactivated == 1
    remaining = registry.list_active_endpoints("user-1")
    assert [(e.channel, e.identity) for e in remaining] == [(ChannelKind.WEB, ENDPOINT)]

    dispatcher.notify("user-1", PAYLOAD)
    assert mobile.sent_identities == [EXPO_TOKEN]
    assert web.sent_identities == [ENDPOINT, ENDPOINT]


def test_transient_failure_keeps_endpoint_active(db, executor):
    registry = PushSubscriptionRegistry(db)
    registry.register_mobile("user-1", EXPO_TOKEN)
    mobile = RecordingChannel(
        ChannelKind.MOBILE,
        statuses={EXPO_TOKEN: DeliveryStatus.TRANSIENT_FAILURE},
    )

    result = _dispatcher(db, executor, mobile=mobile).notify("user-1", PAYLOAD)

    assert result.transiently_failed == 1
    assert result.deactivated == 0
    assert [e.identity for e in registry.list_active_endpoints("user-1")] == [EXPO_TOKEN]


def test_malformed_stored_token_is_skipped_not_sent(db, executor):
    CredentialStore(db).upsert_push_endpoint(
        ChannelKind.MOBILE, "legacy-garbage", {"user_id": "user-1", "platform": "ios"}
    )
    db.commit()
    mobile = RecordingChannel(ChannelKind.MOBILE, validator=is_expo_push_token)

    result = _dispatcher(db, executor, mobile=mobile).notify("user-1", PAYLOAD)

    assert result.skipped_invalid == 1
    assert result.deactivated == 0
    assert mobile.calls == []


def test_mobile_tokens_are_sent_in_bounded_batches(db, executor):
    registry = PushSubscriptionRegistry(db)
    for index in range(250):
        registry.register_mobile("user-1", f"ExponentPushToken[device-{index}]")
    mobile = RecordingChannel(ChannelKind.MOBILE, max_batch_size=100)

    result = _dispatcher(db, executor, mobile=mobile).notify("user-1", PAYLOAD)

    assert sorted(len(identities) for identities, _ in mobile.calls) == [50, 100, 100]
    assert result.delivered == 250


def test_channel_error_is_transient_for_its_endpoints_only(db, executor, web_keys):
    registry = PushSubscriptionRegistry(db)
    registry.register_web("user-1", ENDPOINT, *web_keys())
    registry.register_mobile("user-1", EXPO_TOKEN)
    mobile = RecordingChannel(ChannelKind.MOBILE, error=RuntimeError("boom"))

    result = _dispatcher(db, executor, mobile=mobile).notify("user-1", PAYLOAD)

    assert result.delivered == 1
    assert result.transiently_failed == 1
    failed = [o for o in result.outcomes if o.status == DeliveryStatus.TRANSIENT_FAILURE]
    assert failed[0].identity == EXPO_TOKEN
    assert failed[0].detail.startswith("adapter_error")


def test_unavailable_channel_reports_transient_without_sending(db, executor, web_keys):
    registry = PushSubscriptionRegistry(db)
    registry.register_web("user-1", ENDPOINT, *web_keys())
    web = RecordingChannel(ChannelKind.WEB, max_batch_size=1, available=False)

    result = _dispatcher(db, executor, web=web).notify("user-1", PAYLOAD)

    assert web.calls == []
    assert result.transiently_failed == 1
    assert result.outcomes[0].detail == "channel_unconfigured"
    assert registry.list_active_endpoints("user-1")


def test_slow_channel_times_out_as_transient(db, executor):
    PushSubscriptionRegistry(db).register_mobile("user-1", EXPO_TOKEN)
    release = threading.Event()
    mobile = RecordingChannel(ChannelKind.MOBILE, block_on=release)

    try:
        result = _dispatcher(db, executor, mobile=mobile, send_timeout=0.2).notify("user-1", PAYLOAD)
    finally:
        release.set()

    assert result.transiently_failed == 1
    assert result.outcomes[0].detail == "timeout"


def test_delivery_stamps_last_used(db, executor):
    PushSubscriptionRegistry(db).register_mobile("user-1", EXPO_TOKEN)

    _dispatcher(db, executor).notify("user-1", PAYLOAD)

    db.expire_all()
    assert db.execute(select(DeviceToken)).scalar_one().last_used_at is not None


def test_notify_many_aggregates_per_user_results(db, executor):
    registry = PushSubscriptionRegistry(db)
    registry.register_mobile("user-1", EXPO_TOKEN)
    registry.register_mobile("user-2", "ExponentPushToken[device-2]")

    result = _dispatcher(db, executor).notify_many(["user-1", "user-2", "user-1", "user-3"], PAYLOAD)

    assert result.user_ids == ["user-1", "user-2", "user-3"]
    assert result.delivered == 2
    assert result.as_dict()["delivered"] == 2


def test_store_failure_is_captured_not_raised(db, executor, monkeypatch):
    dispatcher = _dispatcher(db, executor)

    def broken(user_id):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(dispatcher.registry, "list_active_endpoints", broken)

    result = dispatcher.notify("user-1", PAYLOAD)

    assert result.errors == ["endpoint_lookup_failed"]
    assert not result.no_recipients


def test_web_fan_out_never_exceeds_max_concurrency(db, web_keys):
    registry = PushSubscriptionRegistry(db)
    for index in range(12):
        registry.register_web("user-1", f"https://push.example/sub/{index}", *web_keys())
    web = RecordingChannel(ChannelKind.WEB, max_batch_size=1, delay=0.05)
    pool = ThreadPoolExecutor(max_workers=8)

    try:
        result = _dispatcher(db, pool, web=web, max_concurrency=3).notify("user-1", PAYLOAD)
    finally:
        pool.shutdown(wait=True)

    assert result.delivered == 12
    assert len(web.calls) == 12
    assert web.peak_in_flight <= 3


def test_dispatches_queued_on_a_busy_pool_are_not_timed_out(db):
    registry = PushSubscriptionRegistry(db)
    for index in range(3):
        registry.register_mobile(f"user-{index}", f"ExponentPushToken[device-{index}]")
    mobile = RecordingChannel(ChannelKind.MOBILE, delay=0.3)
    pool = ThreadPoolExecutor(max_workers=1)
    results = {}

    def dispatch(user_id):
        local = SessionLocal()
        try:
            results[user_id] = _dispatcher(
                local, pool, mobile=mobile, send_timeout=0.5, max_concurrency=1
            ).notify(user_id, PAYLOAD)
        finally:
            local.close()

    threads = [threading.Thread(target=dispatch, args=(f"user-{i}",)) for i in range(3)]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
    finally:
        pool.shutdown(wait=True)

    assert sorted(mobile.sent_identities) == [f"ExponentPushToken[device-{i}]" for i in range(3)]
    for user_id in ("user-0", "user-1", "user-2"):
        assert results[user_id].delivered == 1
        assert results[user_id].transiently_failed == 0


def test_overdue_permanent_failure_still_deactivates(db, executor):
    registry = PushSubscriptionRegistry(db)
    registry.register_mobile("user-1", EXPO_TOKEN)
    release = threading.Event()
    mobile = RecordingChannel(
        ChannelKind.MOBILE,
        statuses={EXPO_TOKEN: DeliveryStatus.PERMANENT_FAILURE},
        block_on=release,
    )

    try:
        result = _dispatcher(db, executor, mobile=mobile, send_timeout=0.2).notify("user-1", PAYLOAD)
    finally:
        release.set()
    executor.shutdown(wait=True)

    assert result.outcomes[0].detail == "timeout"
    db.expire_all()
    assert registry.list_active_endpoints("user-1") == []


def test_raising_token_validator_is_skipped_not_raised(db, executor):
    PushSubscriptionRegistry(db).register_mobile("user-1", EXPO_TOKEN)

    def broken_validator(identity):
        raise ValueError("bad pattern")

    mobile = RecordingChannel(ChannelKind.MOBILE, validator=broken_validator)

    result = _dispatcher(db, executor, mobile=mobile).notify("user-1", PAYLOAD)

    assert result.skipped_invalid == 1
    assert result.outcomes[0].detail == "token_validation_error"
    assert mobile.calls == []
