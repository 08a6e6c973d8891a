"""Best-effort fan-out of one notification to every active device of a user.

``NotificationDispatcher.notify`` never raises: per-endpoint failures, channel
outages and store errors are all captured in the returned ``DispatchResult``
so the triggering business action is never failed by delivery.

Every dispatch shares one process-wide worker pool. Each dispatch keeps at
most ``max_concurrency`` of its own calls in flight and times a call only
from the moment a worker starts it.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from functools import lru_cache, partial
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.api.app.core.config import settings
from apps.api.app.core.logging import mask_identity
from apps.api.app.db.session import SessionLocal
from apps.api.app.services.push_registry import PushSubscriptionRegistry
from apps.worker.app.engine.channels import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryStatus,
    NotificationPayload,
    PushChannel,
    PushEndpoint,
)
from apps.worker.app.engine.expo_push_client import ExpoPushChannel
from apps.worker.app.engine.web_push_client import WebPushChannel

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    event_key: str
    user_ids: list[str] = field(default_factory=list)
    outcomes: list[DeliveryOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def _count(self, status: DeliveryStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def delivered(self) -> int:
        return self._count(DeliveryStatus.DELIVERED)

    @property
    def skipped_invalid(self) -> int:
        return self._count(DeliveryStatus.SKIPPED_INVALID)

    @property
    def permanently_failed(self) -> int:
        return self._count(DeliveryStatus.PERMANENT_FAILURE)

    @property
    def deactivated(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.deactivated)

    @property
    def transiently_failed(self) -> int:
        return self._count(DeliveryStatus.TRANSIENT_FAILURE)

    @property
    def no_recipients(self) -> bool:
        return not self.outcomes and not self.errors

    def merge(self, other: "DispatchResult") -> "DispatchResult":
        return DispatchResult(
            event_key=self.event_key,
            user_ids=self.user_ids + other.user_ids,
            outcomes=self.outcomes + other.outcomes,
            errors=self.errors + other.errors,
        )

    def as_dict(self) -> dict:
        return {
            "event_key": self.event_key,
            "delivered": self.delivered,
            "skipped_invalid": self.skipped_invalid,
            "permanently_failed": self.permanently_failed,
            "deactivated": self.deactivated,
            "transiently_failed": self.transiently_failed,
            "errors": list(self.errors),
            "outcomes": [
                {
                    "channel": outcome.channel.value,
                    "identity": mask_identity(outcome.identity, 24),
                    "status": outcome.status.value,
                    "detail": outcome.detail,
                    "status_code": outcome.status_code,
                    "deactivated": outcome.deactivated,
                }
                for outcome in self.outcomes
            ],
        }


def _chunks(items: Sequence[PushEndpoint], size: int):
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def _failed(channel: PushChannel, batch: Sequence[PushEndpoint], detail: str) -> list[DeliveryOutcome]:
    return [
        DeliveryOutcome(
            channel=channel.kind,
            identity=endpoint.identity,
            status=DeliveryStatus.TRANSIENT_FAILURE,
            detail=detail,
        )
        for endpoint in batch
    ]


class _SendCall:
    """One adapter call; ``started_at`` is set by the worker that runs it."""

    def __init__(self, channel: PushChannel, batch: list[PushEndpoint]):
        self.channel = channel
        self.batch = batch
        self.started_at: Optional[float] = None
        self._lock = threading.Lock()

    def run(self, payload: NotificationPayload) -> list[DeliveryOutcome]:
        with self._lock:
            self.started_at = time.monotonic()
        return self.channel.send(self.batch, payload)

    def overdue(self, now: float, send_timeout: float) -> bool:
        with self._lock:
            started_at = self.started_at
        return started_at is not None and now - started_at >= send_timeout


def _unique(endpoints: Sequence[PushEndpoint]) -> list[PushEndpoint]:
    seen = set()
    unique = []
    for endpoint in endpoints:
        key = (endpoint.channel, endpoint.identity)
        if key in seen:
            continue
        seen.add(key)
        unique.append(endpoint)
    return unique


class NotificationDispatcher:
    def __init__(
        self,
        registry: PushSubscriptionRegistry,
        web: PushChannel,
        mobile: PushChannel,
        executor: ThreadPoolExecutor,
        max_concurrency: int = 20,
        send_timeout: float = 5.0,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.registry = registry
        self.channels = {ChannelKind.WEB: web, ChannelKind.MOBILE: mobile}
        self.executor = executor
        self.max_concurrency = max(1, int(max_concurrency))
        self.send_timeout = send_timeout
        self.session_factory = session_factory

    def notify(self, user_id: str, payload: NotificationPayload) -> DispatchResult:
        result = DispatchResult(event_key=payload.event_key, user_ids=[user_id])
        try:
            endpoints = _unique(self.registry.list_active_endpoints(user_id))
        except SQLAlchemyError:
            logger.exception("Could not load push endpoints user_id=%s", user_id)
            result.errors.append("endpoint_lookup_failed")
            return result

        if not endpoints:
            logger.debug("No active push endpoints user_id=%s", user_id)
            return result

        calls, skipped = self._plan(endpoints)
        result.outcomes.extend(skipped)
        outcomes = self._run(calls, payload)
        result.outcomes.extend(self._apply(outcomes, result))

        logger.info(
            "Dispatched event=%s user_id=%s delivered=%s skipped_invalid=%s "
            "deactivated=%s transient=%s",
            payload.event_key,
            user_id,
            result.delivered,
            result.skipped_invalid,
            result.deactivated,
            result.transiently_failed,
        )
        return result

    def notify_many(self, user_ids: Sequence[str], payload: NotificationPayload) -> DispatchResult:
        total = DispatchResult(event_key=payload.event_key)
        for user_id in dict.fromkeys(user_ids):
            total = total.merge(self.notify(user_id, payload))
        return total

    def _plan(self, endpoints: list[PushEndpoint]):
        calls: list[tuple[PushChannel, list[PushEndpoint]]] = []
        skipped: list[DeliveryOutcome] = []

        mobile = self.channels[ChannelKind.MOBILE]
        valid_tokens = []
        for endpoint in endpoints:
            if endpoint.channel != ChannelKind.MOBILE:
                continue
            try:
                valid = mobile.is_valid_identity(endpoint.identity)
            except Exception:
                logger.exception(
                    "Token validation raised for %s",
                    mask_identity(endpoint.identity, 24),
                )
                valid, detail = False, "token_validation_error"
            else:
                detail = "invalid_token_format"
            if valid:
                valid_tokens.append(endpoint)
            else:
                skipped.append(
                    DeliveryOutcome(
                        channel=ChannelKind.MOBILE,
                        identity=endpoint.identity,
                        status=DeliveryStatus.SKIPPED_INVALID,
                        detail=detail,
                    )
                )
        for chunk in _chunks(valid_tokens, mobile.max_batch_size):
            calls.append((mobile, chunk))

        web = self.channels[ChannelKind.WEB]
        for endpoint in endpoints:
            if endpoint.channel == ChannelKind.WEB:
                calls.append((web, [endpoint]))

        return calls, skipped

    def _run(self, calls, payload: NotificationPayload) -> list[DeliveryOutcome]:
        """Send every call, at most ``max_concurrency`` of them in flight at once.

        A call's deadline starts when a worker picks it up, so time spent queued
        behind other dispatches on the shared pool never counts against it.
        """
        outcomes: list[DeliveryOutcome] = []
        queued: deque[_SendCall] = deque()
        for channel, batch in calls:
            if not channel.available:
                outcomes.extend(_failed(channel, batch, "channel_unconfigured"))
                continue
            queued.append(_SendCall(channel, batch))

        running: dict[Future, _SendCall] = {}
        while queued or running:
            while queued and len(running) < self.max_concurrency:
                call = queued.popleft()
                running[self.executor.submit(call.run, payload)] = call

            done, _ = wait(
                running,
                timeout=self._poll_timeout(running.values()),
                return_when=FIRST_COMPLETED,
            )
            for future in done:
                outcomes.extend(self._collect(future, running.pop(future)))

            now = time.monotonic()
            for future, call in list(running.items()):
                if future.done() or not call.overdue(now, self.send_timeout):
                    continue
                del running[future]
                outcomes.extend(_failed(call.channel, call.batch, "timeout"))
                future.add_done_callback(partial(self._apply_late, call))
        return outcomes

    def _poll_timeout(self, calls) -> float:
        now = time.monotonic()
        remaining = [
            self.send_timeout - (now - call.started_at)
            for call in calls
            if call.started_at is not None
        ]
        return max(0.01, min(remaining + [self.send_timeout]))

    def _collect(self, future: Future, call: "_SendCall") -> list[DeliveryOutcome]:
        error = future.exception()
        if error is not None:
            logger.error(
                "Push channel %s raised during send",
                call.channel.kind.value,
                exc_info=error,
            )
            return _failed(call.channel, call.batch, f"adapter_error: {error.__class__.__name__}")
        return future.result()

    def _apply_late(self, call: "_SendCall", future: Future) -> None:
        # Runs on the worker thread once an overdue call finally returns.
        if future.exception() is not None:
            logger.error(
                "Overdue %s send failed",
                call.channel.kind.value,
                exc_info=future.exception(),
            )
            return
        outcomes = future.result()
        gone = [o.identity for o in outcomes if o.status == DeliveryStatus.PERMANENT_FAILURE]
        delivered = [o.identity for o in outcomes if o.status == DeliveryStatus.DELIVERED]
        if not gone and not delivered:
            return

        db = self.session_factory()
        try:
            registry = PushSubscriptionRegistry(db)
            for identity in gone:
                registry.deactivate(call.channel.kind, identity)
                logger.warning(
                    "Deactivated %s endpoint %s after overdue send",
                    call.channel.kind.value,
                    mask_identity(identity, 24),
                )
            if delivered:
                registry.mark_delivered(call.channel.kind, delivered)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record overdue %s send results", call.channel.kind.value)
        finally:
            db.close()

    def _apply(self, outcomes: list[DeliveryOutcome], result: DispatchResult) -> list[DeliveryOutcome]:
        applied = []
        for outcome in outcomes:
            if outcome.status == DeliveryStatus.PERMANENT_FAILURE:
                try:
                    self.registry.deactivate(outcome.channel, outcome.identity)
                except SQLAlchemyError:
                    logger.exception(
                        "Could not deactivate %s endpoint %s",
                        outcome.channel.value,
                        mask_identity(outcome.identity, 24),
                    )
                    self.registry.db.rollback()
                    result.errors.append("deactivate_failed")
                else:
                    logger.warning(
                        "Deactivated %s endpoint %s: %s",
                        outcome.channel.value,
                        mask_identity(outcome.identity, 24),
                        outcome.detail,
                    )
                    outcome = replace(outcome, deactivated=True)
            elif outcome.status == DeliveryStatus.TRANSIENT_FAILURE:
                logger.warning(
                    "Transient %s delivery failure endpoint=%s detail=%s status=%s",
                    outcome.channel.value,
                    mask_identity(outcome.identity, 24),
                    outcome.detail,
                    outcome.status_code,
                )
            applied.append(outcome)

        for kind in ChannelKind:
            delivered = [
                outcome.identity
                for outcome in applied
                if outcome.channel == kind and outcome.status == DeliveryStatus.DELIVERED
            ]
            if not delivered:
                continue
            try:
                self.registry.mark_delivered(kind, delivered)
            except SQLAlchemyError:
                logger.exception("Could not record delivery time for %s endpoints", kind.value)
                self.registry.db.rollback()
                result.errors.append("touch_failed")
        return applied


@lru_cache()
def get_web_push_channel() -> WebPushChannel:
    """Configured once per process; an unconfigured channel stays unavailable."""
    return WebPushChannel.from_settings(settings)


@lru_cache()
def get_mobile_push_channel() -> ExpoPushChannel:
    return ExpoPushChannel.from_settings(settings)


@lru_cache()
def get_push_executor() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(
        max_workers=max(1, settings.PUSH_MAX_CONCURRENCY),
        thread_name_prefix="push-send",
    )


def build_dispatcher(
    db: Session,
    web: Optional[PushChannel] = None,
    mobile: Optional[PushChannel] = None,
) -> NotificationDispatcher:
    return NotificationDispatcher(
        registry=PushSubscriptionRegistry(db),
        web=web or get_web_push_channel(),
        mobile=mobile or get_mobile_push_channel(),
        executor=get_push_executor(),
        max_concurrency=settings.PUSH_MAX_CONCURRENCY,
        send_timeout=settings.PUSH_SEND_TIMEOUT_SECONDS,
    )
