"""Registration and retirement of push endpoints for both channels.

Every operation is idempotent by endpoint identity: registering twice
overwrites, and deactivating or unsubscribing an unknown or already inactive
endpoint is a no-op by contract.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from apps.api.app.core.errors import InvalidSubscription
from apps.api.app.core.logging import mask_identity
from apps.api.app.core.time import utcnow
from apps.api.app.services.credential_store import CredentialStore
from apps.worker.app.engine.channels import ChannelKind, PushEndpoint
from apps.worker.app.engine.expo_push_client import is_expo_push_token
from apps.worker.app.engine.web_push_client import validate_subscription_keys

logger = logging.getLogger(__name__)

DEFAULT_MOBILE_PLATFORM = "android"


class PushSubscriptionRegistry:
    def __init__(self, db: Session):
        self.db = db
        self.store = CredentialStore(db)

    def register_web(
        self,
        user_id: str,
        endpoint_url: str,
        p256dh_key: str,
        auth_key: str,
        user_agent: Optional[str] = None,
    ) -> None:
        if not endpoint_url or not endpoint_url.startswith("https://"):
            raise InvalidSubscription("endpoint must be an https URL")
        validate_subscription_keys(p256dh_key, auth_key)

        self.store.upsert_push_endpoint(
            ChannelKind.WEB,
            endpoint_url,
            {
                "user_id": user_id,
                "p256dh": p256dh_key,
                "auth": auth_key,
                "user_agent": user_agent,
            },
        )
        self.db.commit()

    def register_mobile(
        self,
        user_id: str,
        push_token: str,
        platform: Optional[str] = None,
    ) -> bool:
        """Upsert a mobile push token. Malformed tokens are ignored and return False."""
        if not is_expo_push_token(push_token):
            logger.info(
                "Ignoring malformed mobile push token user_id=%s token=%s",
                user_id,
                mask_identity(str(push_token or "")),
            )
            return False

        self.store.upsert_push_endpoint(
            ChannelKind.MOBILE,
            push_token,
            {
                "user_id": user_id,
                "platform": platform if isinstance(platform, str) and platform else DEFAULT_MOBILE_PLATFORM,
            },
        )
        self.db.commit()
        return True

    def deactivate(self, channel: ChannelKind, identity: str) -> None:
        self.store.set_push_endpoint_active(channel, identity, False)
        self.db.commit()

    def unsubscribe(self, channel: ChannelKind, identity: str, user_id: Optional[str] = None) -> bool:
        """Soft delete; delivery only reads active rows.

        With ``user_id`` an endpoint owned by someone else is left untouched.
        Returns whether a row was matched.
        """
        matched = self.store.set_push_endpoint_active(channel, identity, False, user_id=user_id)
        self.db.commit()
        return matched

    def list_active_endpoints(self, user_id: str) -> list[PushEndpoint]:
        return self.store.list_active_push_endpoints(user_id)

    def mark_delivered(self, channel: ChannelKind, identities: list[str]) -> None:
        self.store.mark_push_endpoints_used(channel, identities, utcnow())
        self.db.commit()
