import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from apps.api.app.models.auth_audit_event import AuthAuditEvent


def log_auth_event(
    db: Session,
    action: str,
    user_id: Optional[str] = None,
    hotel_id: Optional[str] = None,
    token_hash: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
):
    event = AuthAuditEvent(
        user_id=user_id,
        hotel_id=hotel_id,
        action=action,
        token_hint=token_hash[:12] if token_hash else None,
        details=json.dumps(details, sort_keys=True) if details else None,
    )
    db.add(event)
    db.flush()
