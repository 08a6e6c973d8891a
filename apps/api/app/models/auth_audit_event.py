import uuid

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from apps.api.app.db.session import Base


class AuthAuditEvent(Base):
    __tablename__ = "auth_audit_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=True)
    hotel_id = Column(String, index=True, nullable=True)
    action = Column(String, index=True, nullable=False)  # auth.session.issued | auth.refresh.reuse_detected | ...
    token_hint = Column(String, nullable=True)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
