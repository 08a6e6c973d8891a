"""SQLAlchemy-backed system of record for refresh tokens and push endpoints."""

from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.api.app.models.device_token import DeviceToken
from apps.api.app.models.push_subscription import WebPushSubscription
from apps.api.app.models.refresh_token import RefreshToken
from apps.worker.app.engine.channels import ChannelKind, PushEndpoint


_ENDPOINT_MODELS = {
    ChannelKind.WEB: (WebPushSubscription, "endpoint"),
    ChannelKind.MOBILE: (DeviceToken, "token"),
}


def _endpoint_model(channel: ChannelKind):
    model, identity_attr = _ENDPOINT_MODELS[ChannelKind(channel)]
    return model, getattr(model, identity_attr), identity_attr


class CredentialStore:
    def __init__(self, db: Session):
        self.db = db

    # Refresh tokens

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        return self.db.execute(
            select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        ).scalar_one_or_none()

    def create_refresh_token(
        self,
        *,
        token_hash: str,
        user_id: str,
        role: str,
        hotel_id: Optional[str],
        expires_at: datetime,
    ) -> RefreshToken:
        row = RefreshToken(
            token_hash=token_hash,
            user_id=user_id,
            role=role,
            hotel_id=hotel_id,
            expires_at=expires_at,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def revise_refresh_token(
        self,
        token_hash: str,
        revoked_at: datetime,
        replaced_by_hash: Optional[str] = None,
    ) -> bool:
        """Set revoked_at only if it is still unset.

        Returns True when this caller performed the revocation. Concurrent
        callers presenting the same token race on this conditional update and
        exactly one of them wins.
        """
        values: dict[str, Any] = {"revoked_at": revoked_at}
        if replaced_by_hash:
            values["replaced_by_hash"] = replaced_by_hash
        result = self.db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == token_hash,
                RefreshToken.revoked_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        result = self.db.execute(
            delete(RefreshToken)
            .where(RefreshToken.expires_at < expired_before)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    # Push endpoints

    def upsert_push_endpoint(
        self,
        channel: ChannelKind,
        identity: str,
        attrs: dict[str, Any],
    ) -> None:
        """Insert or overwrite the endpoint row; last writer wins on ownership and keys."""
        model, identity_col, identity_attr = _endpoint_model(channel)
        values = {**attrs, "is_active": True}

        row = self.db.execute(
            select(model).where(identity_col == identity)
        ).scalar_one_or_none()
        if row is None:
            self.db.add(model(**{identity_attr: identity}, **values))
            try:
                self.db.flush()
                return
            except IntegrityError:
                # Another writer registered the same identity first; overwrite it.
                self.db.rollback()
                row = self.db.execute(
                    select(model).where(identity_col == identity)
                ).scalar_one()

        for key, value in values.items():
            setattr(row, key, value)
        self.db.flush()

    def set_push_endpoint_active(
        self,
        channel: ChannelKind,
        identity: str,
        active: bool,
        user_id: Optional[str] = None,
    ) -> bool:
        """Flip the active flag; with ``user_id`` only that owner's row is touched."""
        model, identity_col, _ = _endpoint_model(channel)
        conditions = [identity_col == identity]
        if user_id is not None:
            conditions.append(model.user_id == user_id)
        result = self.db.execute(
            update(model)
            .where(*conditions)
            .values(is_active=active)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) > 0

    def list_active_push_endpoints(self, user_id: str) -> list[PushEndpoint]:
        web_rows = self.db.execute(
            select(WebPushSubscription).where(
                WebPushSubscription.user_id == user_id,
                WebPushSubscription.is_active.is_(True),
            )
        ).scalars().all()
        mobile_rows = self.db.execute(
            select(DeviceToken).where(
                DeviceToken.user_id == user_id,
                DeviceToken.is_active.is_(True),
            )
        ).scalars().all()

        endpoints = [
            PushEndpoint(
                channel=ChannelKind.WEB,
                identity=row.endpoint,
                user_id=row.user_id,
                p256dh=row.p256dh,
                auth=row.auth,
                user_agent=row.user_agent,
            )
            for row in web_rows
        ]
        endpoints.extend(
            PushEndpoint(
                channel=ChannelKind.MOBILE,
                identity=row.token,
                user_id=row.user_id,
                platform=row.platform,
            )
            for row in mobile_rows
        )
        return endpoints

    def mark_push_endpoints_used(
        self,
        channel: ChannelKind,
        identities: Sequence[str],
        used_at: datetime,
    ) -> None:
        if not identities:
            return
        model, identity_col, _ = _endpoint_model(channel)
        self.db.execute(
            update(model)
            .where(identity_col.in_(list(identities)))
            .values(last_used_at=used_at)
            .execution_options(synchronize_session=False)
        )
