# src/pharmacy_webapp/auth_service.py

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

from pydantic import ValidationError

from .api_client import ResilientApiClient
from .device import DeviceIdentifier, get_device_identifier
from .errors import ApiError, AuthInvalidError, EnvelopeError
from .models import CredentialRecord, DeviceCheck, SignInData
from .session import SessionTerminator
from .session_guard import SessionGuard
from .storage import CredentialStore

logger = logging.getLogger(__name__)

OTP_PATTERN = re.compile(r"\d{6}")


@dataclass
class PendingSignIn:
    """A successful sign-in held back until the device is verified."""
    data: SignInData
    remember_me: bool
    device: DeviceIdentifier


class AuthService:
    """Sign-in/sign-out and the user/role lookups built on the stored session."""

    def __init__(
        self,
        client: ResilientApiClient,
        store: CredentialStore,
        guard: SessionGuard,
        terminator: SessionTerminator,
        device: Optional[DeviceIdentifier] = None,
    ):
        self.client = client
        self.store = store
        self.guard = guard
        self.terminator = terminator
        self.device = device
        self._pending: Optional[PendingSignIn] = None

    # --- Sign in / out ---

    async def sign_in(self, username_or_email: str, password: str, remember_me: bool = False) -> SignInData:
        """
        Authenticates against /auth/signin, then asks the backend whether this
        device must be verified. A trusted device gets its session stored in
        the store selected by ``remember_me`` and idle tracking starts. An
        unknown device gets a one-time code sent instead; the session is only
        stored once :meth:`complete_sign_in` verifies that code.
        """
        self._pending = None
        response = await self.client.post(
            "/auth/signin",
            json={"usernameOrEmail": username_or_email, "password": password, "rememberMe": remember_me},
        )
        try:
            sign_in_data = SignInData.model_validate(self.client.unwrap(response) or {})
        except ValidationError as e:
            raise EnvelopeError("Malformed sign-in response", status_code=response.status_code, response=response) from e
        if sign_in_data.session is None:
            raise EnvelopeError("Sign-in response did not include a session", status_code=response.status_code)

        access_token = sign_in_data.session.access_token
        device = self.device_identifier()
        try:
            requires_otp = await self.check_device(access_token, device)
        except ApiError as e:
            # The backend may not support device checks; sign-in goes ahead
            logger.warning("Device check failed, continuing without verification: %s", e)
            requires_otp = False

        if requires_otp:
            logger.info("Device %s is not trusted yet; one-time code required", device.device_id)
            self._pending = PendingSignIn(data=sign_in_data, remember_me=remember_me, device=device)
            sign_in_data.requires_otp = True
            await self.send_otp(access_token)
            return sign_in_data

        self._establish_session(sign_in_data, remember_me)
        logger.info("Signed in as %s (remember me: %s)", username_or_email, remember_me)
        return sign_in_data

    async def complete_sign_in(self, otp: str) -> Dict[str, Any]:
        """Verify the one-time code for the pending sign-in, then store its session."""
        pending = self._require_pending()
        access_token = pending.data.session.access_token
        await self.verify_otp(access_token, otp, pending.device)

        user = await self.client.get_data("/auth/me", access_token=access_token)
        if isinstance(user, dict):
            pending.data.user = user
        self._pending = None
        self._establish_session(pending.data, pending.remember_me)
        logger.info("Device %s verified; signed in", pending.device.device_id)
        return pending.data.user or {}

    async def resend_otp(self) -> None:
        pending = self._require_pending()
        await self.send_otp(pending.data.session.access_token)

    @property
    def awaiting_verification(self) -> bool:
        return self._pending is not None

    def _require_pending(self) -> "PendingSignIn":
        if self._pending is None:
            raise AuthInvalidError("No sign-in is waiting for device verification")
        return self._pending

    def _establish_session(self, sign_in_data: SignInData, remember_me: bool) -> None:
        session = sign_in_data.session
        self.store.save(
            CredentialRecord(
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                expires_at=session.resolve_expires_at(),
                remember_me=remember_me,
            )
        )
        if sign_in_data.user is not None:
            self.store.save_user(sign_in_data.user)
        self.guard.initialize(self.terminator.terminate)

    async def sign_out(self) -> None:
        """Tells the server to end the session; local state is cleared regardless."""
        try:
            await self.client.post("/auth/signout")
        finally:
            logger.info("Signed out")
            self._pending = None
            self.terminator.terminate()

    def resume_session(self) -> bool:
        """Restart idle tracking for credentials that survived a reload."""
        if not self.is_authenticated():
            return False
        self.guard.initialize(self.terminator.terminate)
        return True

    # --- Device verification ---
    # These run before a session is stored, so they take the bearer token explicitly.

    def device_identifier(self) -> DeviceIdentifier:
        if self.device is None:
            self.device = get_device_identifier(self.store.persistent)
        return self.device

    async def check_device(self, access_token: str, device: Optional[DeviceIdentifier] = None) -> bool:
        """Ask /auth/check-device whether ``device`` needs a one-time code."""
        device = device or self.device_identifier()
        data = await self.client.post_data("/auth/check-device", json=device.payload(), access_token=access_token)
        return DeviceCheck.model_validate(data if isinstance(data, dict) else {}).requires_otp

    async def send_otp(self, access_token: str) -> None:
        await self.client.post_data("/auth/send-otp", json={}, access_token=access_token)
        logger.info("One-time code sent")

    async def verify_otp(self, access_token: str, otp: str, device: Optional[DeviceIdentifier] = None) -> None:
        """Verify a six-digit code; the backend then trusts ``device``."""
        if not OTP_PATTERN.fullmatch(otp or ""):
            raise ValueError("Please enter a valid 6-digit OTP")
        device = device or self.device_identifier()
        await self.client.post_data(
            "/auth/verify-otp", json={"otp": otp, **device.payload()}, access_token=access_token
        )

    # --- Current user ---

    async def get_current_user(self) -> Optional[Dict[str, Any]]:
        user = await self.client.get_data("/auth/me")
        if isinstance(user, dict):
            self.store.save_user(user)
            return user
        return None

    def is_authenticated(self) -> bool:
        return bool(self.get_token())

    def get_token(self) -> Optional[str]:
        return self.store.access_token

    def get_stored_user(self) -> Optional[Dict[str, Any]]:
        return self.store.load_user()

    def has_role(self, roles: Union[str, Iterable[str]]) -> bool:
        user = self.get_stored_user()
        if not user or not user.get("Roles"):
            return False
        allowed = [roles] if isinstance(roles, str) else list(roles)
        return user["Roles"] in allowed

    # --- Proactive refresh ---

    async def validate_and_refresh_token(self, leeway: int = 60, now: Optional[float] = None) -> bool:
        """
        Refreshes the access token when it expires within ``leeway`` seconds.
        Returns whether a usable token is stored afterwards.
        """
        if not self.is_authenticated():
            return False
        expires_at = self.store.expires_at
        now = time.time() if now is None else now
        if not expires_at or expires_at - now > leeway:
            return True

        logger.info("Access token expires in %ds; refreshing ahead of time", int(expires_at - now))
        try:
            await self.client.refresh_session()
        except ApiError as e:
            logger.warning("Proactive token refresh failed: %s", e)
            return False
        return self.is_authenticated()
