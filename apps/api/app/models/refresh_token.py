from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from apps.api.app.db.session import Base


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    # sha256 of the opaque value; the raw token is only ever held by the client.
    token_hash = Column(String, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    role = Column(String, nullable=False)
    hotel_id = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    replaced_by_hash = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
