from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class WebPushKeys(BaseModel):
    p256dh: Optional[str] = None
    auth: Optional[str] = None


class WebPushSubscribeRequest(BaseModel):
    endpoint: Optional[str] = None
    keys: Optional[WebPushKeys] = None


class WebPushUnsubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1)


class DeviceTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_token: str = Field(min_length=1, alias="deviceToken")
    platform: Optional[str] = None
