import logging
import re
from typing import Optional, Sequence

import requests
from exponent_server_sdk import (
    DeviceNotRegisteredError,
    MessageRateExceededError,
    PushClient,
    PushMessage,
    PushServerError,
    PushTicketError,
)

from apps.worker.app.engine.channels import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryStatus,
    NotificationPayload,
    PushEndpoint,
)

logger = logging.getLogger(__name__)

# Expo documents 100 messages per push request.
EXPO_MAX_BATCH_SIZE = 100

_BRACKETED_TOKEN = re.compile(r"^Expo(nent)?PushToken\[.+\]$")
_BARE_TOKEN = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$",
    re.IGNORECASE,
)


def is_expo_push_token(token) -> bool:
    if not isinstance(token, str):
        return False
    return bool(_BRACKETED_TOKEN.match(token) or _BARE_TOKEN.match(token))


def _build_session(access_token: str) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "accept": "application/json",
            "accept-encoding": "gzip, deflate",
            "content-type": "application/json",
        }
    )
    if access_token:
        session.headers["Authorization"] = f"Bearer {access_token}"
    return session


class ExpoPushChannel:
    kind = ChannelKind.MOBILE
    max_batch_size = EXPO_MAX_BATCH_SIZE

    def __init__(
        self,
        *,
        enabled: bool = True,
        access_token: str = "",
        timeout_seconds: float = 5.0,
        client: Optional[PushClient] = None,
        session: Optional[requests.Session] = None,
    ):
        self._available = enabled
        if not enabled:
            logger.warning("Mobile push unavailable: EXPO_PUSH_ENABLED is false")
        elif not access_token and client is None:
            logger.warning(
                "EXPO_ACCESS_TOKEN is not set; Expo pushes will be sent unauthenticated"
            )
        # PushClient posts with timeout=None unless one is given.
        self._client = client or PushClient(
            session=session or _build_session(access_token),
            timeout=timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings) -> "ExpoPushChannel":
        return cls(
            enabled=settings.EXPO_PUSH_ENABLED,
            access_token=settings.EXPO_ACCESS_TOKEN,
            timeout_seconds=settings.PUSH_SEND_TIMEOUT_SECONDS,
        )

    @property
    def available(self) -> bool:
        return self._available

    def is_valid_identity(self, identity: str) -> bool:
        return is_expo_push_token(identity)

    def send(
        self,
        endpoints: Sequence[PushEndpoint],
        payload: NotificationPayload,
    ) -> list[DeliveryOutcome]:
        if not endpoints:
            return []
        if not self._available:
            return self._fail_all(endpoints, "channel_unconfigured")

        messages = [
            PushMessage(
                to=endpoint.identity,
                title=payload.title,
                body=payload.body,
                data=payload.as_mobile_data(),
                sound="default",
            )
            for endpoint in endpoints
        ]

        try:
            tickets = self._client.publish_multiple(messages)
        except PushServerError as exc:
            status_code = getattr(exc.response, "status_code", None)
            logger.warning("Expo push chunk rejected status=%s size=%s", status_code, len(messages))
            return self._fail_all(endpoints, "gateway_error", status_code)
        except requests.Timeout:
            return self._fail_all(endpoints, "timeout")
        except requests.RequestException as exc:
            return self._fail_all(endpoints, f"transport_error: {exc.__class__.__name__}")

        outcomes = []
        answered = set()
        for ticket in tickets:
            token = ticket.push_message.to
            answered.add(token)
            outcomes.append(self._classify_ticket(token, ticket))

        missing = [endpoint for endpoint in endpoints if endpoint.identity not in answered]
        outcomes.extend(self._fail_all(missing, "missing_ticket"))
        return outcomes

    def _classify_ticket(self, token: str, ticket) -> DeliveryOutcome:
        try:
            ticket.validate_response()
        except DeviceNotRegisteredError:
            return DeliveryOutcome(
                channel=self.kind,
                identity=token,
                status=DeliveryStatus.PERMANENT_FAILURE,
                detail="device_not_registered",
            )
        except MessageRateExceededError:
            return DeliveryOutcome(
                channel=self.kind,
                identity=token,
                status=DeliveryStatus.TRANSIENT_FAILURE,
                detail="rate_limited",
            )
        except PushTicketError as exc:
            return DeliveryOutcome(
                channel=self.kind,
                identity=token,
                status=DeliveryStatus.TRANSIENT_FAILURE,
                detail=f"ticket_error: {exc}",
            )
        return DeliveryOutcome(
            channel=self.kind,
            identity=token,
            status=DeliveryStatus.DELIVERED,
        )

    def _fail_all(
        self,
        endpoints: Sequence[PushEndpoint],
        detail: str,
        status_code: Optional[int] = None,
    ) -> list[DeliveryOutcome]:
        return [
            DeliveryOutcome(
                channel=self.kind,
                identity=endpoint.identity,
                status=DeliveryStatus.TRANSIENT_FAILURE,
                detail=detail,
                status_code=status_code,
            )
            for endpoint in endpoints
        ]
