from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class AccessTokenClaims(BaseModel):
    subject: str
    role: str
    tenant_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: datetime


class IssuedSession(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int


class RefreshedSession(BaseModel):
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


class MobileLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    password: str = Field(min_length=1)
    device_token: Optional[str] = Field(default=None, alias="deviceToken")
    platform: Optional[str] = None


class MobileRefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(min_length=1, alias="refreshToken")


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
