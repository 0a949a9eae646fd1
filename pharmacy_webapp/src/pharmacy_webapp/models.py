# src/pharmacy_webapp/models.py

import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class CredentialRecord(BaseModel):
    """
    The credentials of the signed-in user as kept in browser-style storage.
    Exactly one record is active per store set; saving always overwrites it.
    """
    access_token: str
    refresh_token: str
    expires_at: int  # epoch seconds
    remember_me: bool = False


class RefreshSession(BaseModel):
    """`data.session` of a successful /auth/signin or /auth/refresh response."""
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    expires_in: Optional[int] = None
    expires_at: Optional[int] = None

    def resolve_expires_at(self, now: Optional[float] = None) -> int:
        if self.expires_at is not None:
            return int(self.expires_at)
        now = time.time() if now is None else now
        return int(now) + int(self.expires_in or 0)


class ApiEnvelope(BaseModel):
    """Standard `{success, data?, message?}` envelope of the backend API."""
    model_config = ConfigDict(extra="allow")

    success: bool = False
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[str] = None


class SignInData(BaseModel):
    model_config = ConfigDict(extra="allow")

    user: Optional[Dict[str, Any]] = None
    session: Optional[RefreshSession] = None
    # Set when the device still has to be verified with a one-time code
    requires_otp: bool = False


class DeviceCheck(BaseModel):
    """`data` of /auth/check-device."""
    model_config = ConfigDict(extra="ignore")

    requires_otp: bool = Field(default=False, alias="requiresOTP")
