import base64
import binascii
import hashlib
import json
import logging
from typing import Optional, Sequence

import requests
from cryptography.hazmat.primitives.asymmetric import ec
from pywebpush import WebPushException, webpush

from apps.api.app.core.errors import (
    DeliveryFailure,
    InvalidSubscription,
    PermanentDeliveryFailure,
    TransientDeliveryFailure,
)
from apps.api.app.core.logging import mask_identity
from apps.worker.app.engine.channels import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryStatus,
    NotificationPayload,
    PushEndpoint,
)

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = {404, 410}
AUTH_SECRET_LENGTH = 16


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


def validate_subscription_keys(p256dh: Optional[str], auth: Optional[str]) -> None:
    if not p256dh or not auth:
        raise InvalidSubscription("p256dh and auth keys are required")
    try:
        raw_key = _b64url_decode(p256dh)
        raw_auth = _b64url_decode(auth)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise InvalidSubscription("subscription keys must be base64url encoded") from exc

    if len(raw_auth) != AUTH_SECRET_LENGTH:
        raise InvalidSubscription("auth secret must be 16 bytes")
    if len(raw_key) != 65 or raw_key[0] != 0x04:
        raise InvalidSubscription("p256dh must be an uncompressed P-256 point")
    try:
        ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), raw_key)
    except ValueError as exc:
        raise InvalidSubscription("p256dh is not a valid P-256 public key") from exc


def topic_for(event_key: str) -> str:
    # Topic header: at most 32 chars from the URL-safe base64 alphabet.
    digest = hashlib.sha256(event_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")[:32]


def classify_webpush_error(exc: WebPushException) -> DeliveryFailure:
    # requests.Response is falsy for 4xx/5xx, so no truthiness checks here.
    status_code = getattr(exc.response, "status_code", None)
    if status_code in GONE_STATUS_CODES:
        return PermanentDeliveryFailure("endpoint_gone", status_code)
    if status_code == 429:
        return TransientDeliveryFailure("rate_limited", status_code)
    if status_code is not None and status_code >= 500:
        return TransientDeliveryFailure("gateway_error", status_code)
    if status_code is not None:
        return TransientDeliveryFailure("rejected", status_code)
    return TransientDeliveryFailure(f"webpush_error: {exc.message}")


class WebPushChannel:
    kind = ChannelKind.WEB
    max_batch_size = 1

    def __init__(
        self,
        *,
        vapid_public_key: str,
        vapid_private_key: str,
        vapid_subject: str,
        ttl_seconds: int = 86400,
        timeout_seconds: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self._public_key = vapid_public_key
        self._private_key = vapid_private_key
        self._subject = vapid_subject
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._available = bool(vapid_public_key and vapid_private_key)
        if not self._available:
            logger.warning(
                "Web push unavailable: set VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY"
            )

    @classmethod
    def from_settings(cls, settings) -> "WebPushChannel":
        return cls(
            vapid_public_key=settings.VAPID_PUBLIC_KEY,
            vapid_private_key=settings.VAPID_PRIVATE_KEY,
            vapid_subject=settings.VAPID_SUBJECT,
            ttl_seconds=settings.WEB_PUSH_TTL_SECONDS,
            timeout_seconds=settings.PUSH_SEND_TIMEOUT_SECONDS,
        )

    @property
    def available(self) -> bool:
        return self._available

    @property
    def public_key(self) -> str:
        return self._public_key

    def is_valid_identity(self, identity: str) -> bool:
        return isinstance(identity, str) and identity.startswith("https://")

    def send(
        self,
        endpoints: Sequence[PushEndpoint],
        payload: NotificationPayload,
    ) -> list[DeliveryOutcome]:
        return [self._send_one(endpoint, payload) for endpoint in endpoints]

    def _send_one(self, endpoint: PushEndpoint, payload: NotificationPayload) -> DeliveryOutcome:
        try:
            status_code = self.deliver(endpoint, payload)
        except PermanentDeliveryFailure as exc:
            return DeliveryOutcome(
                channel=self.kind,
                identity=endpoint.identity,
                status=DeliveryStatus.PERMANENT_FAILURE,
                detail=exc.detail,
                status_code=exc.status_code,
            )
        except TransientDeliveryFailure as exc:
            return DeliveryOutcome(
                channel=self.kind,
                identity=endpoint.identity,
                status=DeliveryStatus.TRANSIENT_FAILURE,
                detail=exc.detail,
                status_code=exc.status_code,
            )
        return DeliveryOutcome(
            channel=self.kind,
            identity=endpoint.identity,
            status=DeliveryStatus.DELIVERED,
            status_code=status_code,
        )

    def deliver(self, endpoint: PushEndpoint, payload: NotificationPayload) -> Optional[int]:
        """Send one encrypted message, raising a ``DeliveryFailure`` subclass on error."""
        if not self._available:
            raise TransientDeliveryFailure("channel_unconfigured")

        try:
            response = webpush(
                subscription_info=endpoint.subscription_info(),
                data=json.dumps(payload.as_web_message()),
                vapid_private_key=self._private_key,
                # pywebpush adds aud/exp to the claims dict it is given.
                vapid_claims={"sub": self._subject},
                timeout=self._timeout,
                ttl=self._ttl,
                headers={"Topic": topic_for(payload.event_key), "Urgency": "high"},
                requests_session=self._session,
            )
        except WebPushException as exc:
            failure = classify_webpush_error(exc)
            logger.debug(
                "Web push failed endpoint=%s status=%s",
                mask_identity(endpoint.identity, 40),
                failure.status_code,
            )
            raise failure from exc
        except requests.Timeout as exc:
            raise TransientDeliveryFailure("timeout") from exc
        except requests.RequestException as exc:
            raise TransientDeliveryFailure(f"transport_error: {exc.__class__.__name__}") from exc

        return getattr(response, "status_code", None)
