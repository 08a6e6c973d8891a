"""Contracts shared by the push channels and the notification dispatcher.

The dispatcher only depends on ``PushChannel``; concrete channels (web push,
Expo) and test doubles satisfy it structurally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Sequence


class ChannelKind(str, Enum):
    WEB = "web"
    MOBILE = "mobile"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    SKIPPED_INVALID = "skipped_invalid"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class PushEndpoint:
    """One registered device on one channel.

    ``identity`` is the endpoint URL for web subscriptions and the push token
    for mobile devices; it is globally unique per channel.
    """

    channel: ChannelKind
    identity: str
    user_id: str
    p256dh: Optional[str] = None
    auth: Optional[str] = None
    user_agent: Optional[str] = None
    platform: Optional[str] = None

    def subscription_info(self) -> dict[str, Any]:
        return {
            "endpoint": self.identity,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str
    event_key: str
    data: dict[str, Any] = field(default_factory=dict)
    tag: Optional[str] = None

    def as_web_message(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "tag": self.tag or self.event_key,
            "eventKey": self.event_key,
        }

    def as_mobile_data(self) -> dict[str, Any]:
        return {**self.data, "eventKey": self.event_key}


@dataclass(frozen=True)
class DeliveryOutcome:
    channel: ChannelKind
    identity: str
    status: DeliveryStatus
    detail: Optional[str] = None
    status_code: Optional[int] = None
    deactivated: bool = False


class PushChannel(Protocol):
    """Delivery capability the dispatcher depends on."""

    kind: ChannelKind
    max_batch_size: int

    @property
    def available(self) -> bool:
        """Whether the channel was configured at process start."""

    def is_valid_identity(self, identity: str) -> bool:
        """Channel-specific shape check for an endpoint identity."""

    def send(
        self,
        endpoints: Sequence[PushEndpoint],
        payload: NotificationPayload,
    ) -> list[DeliveryOutcome]:
        """Deliver ``payload`` and classify the result for every endpoint."""
