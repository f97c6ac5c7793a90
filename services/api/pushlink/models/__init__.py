"""Pushlink database models."""

from pushlink.models.delivery_log import DeliveryLog
from pushlink.models.device_token import DeviceToken, InvalidReason, TokenPlatform, TokenStatus

__all__ = [
    "DeviceToken",
    "DeliveryLog",
    "TokenPlatform",
    "TokenStatus",
    "InvalidReason",
]
