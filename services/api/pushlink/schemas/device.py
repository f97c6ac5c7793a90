"""Device registration schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from pushlink.models.device_token import TokenPlatform, TokenStatus


class DeviceRegisterRequest(BaseModel):
    platform: TokenPlatform = TokenPlatform.UNKNOWN
    address: str = Field(..., min_length=1, max_length=4096)


class DeviceUnregisterRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=4096)


class DeviceResponse(BaseModel):
    id: str
    platform: TokenPlatform
    status: TokenStatus
    registered_at: datetime
    last_used_at: datetime | None = None

    model_config = {"from_attributes": True}
