# src/pharmacy_webapp/api_client.py
"""
Async HTTP client for the pharmacy backend.

Every request carries the stored bearer token. A 401 saying the token is
expired, invalid or missing triggers one token refresh shared by all
requests that hit the same 401 while it runs; each of them is then replayed
once with the new token. Irrecoverable auth failures end the session through
:class:`~pharmacy_webapp.session.SessionTerminator`. 403 becomes a
:class:`~pharmacy_webapp.errors.ForbiddenError`; everything else is handed
back to the caller.
"""

import asyncio
import logging
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from .config import settings
from .errors import (
    DEFAULT_FORBIDDEN_MESSAGE,
    ApiError,
    AuthExpiredError,
    AuthInvalidError,
    EnvelopeError,
    ForbiddenError,
    HttpError,
    NetworkError,
    RefreshFailedError,
)
from .models import ApiEnvelope, RefreshSession
from .session import SessionTerminator
from .storage import CredentialStore, StorageUnavailableError

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"
EXPIRED_TOKEN_MESSAGES = (
    "Invalid or expired token",
    "No authorization token provided",
)


def error_message(response: httpx.Response) -> str:
    """The ``message`` field of a JSON error body, or an empty string."""
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return ""


def is_expired_token_message(message: str) -> bool:
    return any(expected in message for expected in EXPIRED_TOKEN_MESSAGES)


class RefreshCoordinator:
    """
    In-flight flag plus the requests waiting on the refresh. Checking and
    setting ``in_flight`` happens without an ``await`` in between, which is
    enough for mutual exclusion on a single event loop.
    """

    def __init__(self):
        self.in_flight = False
        self.waiters: List[asyncio.Future] = []

    async def wait(self) -> str:
        future = asyncio.get_running_loop().create_future()
        self.waiters.append(future)
        return await future

    def resolve(self, token: str) -> None:
        waiters, self.waiters = self.waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(token)

    def reject(self, message: str = "Token refresh failed") -> None:
        waiters, self.waiters = self.waiters, []
        for future in waiters:
            if not future.done():
                future.set_exception(RefreshFailedError(message, status_code=401))


class ResilientApiClient:
    def __init__(
        self,
        store: CredentialStore,
        terminator: SessionTerminator,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        refresh_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.terminator = terminator
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.refresh_timeout = refresh_timeout if refresh_timeout is not None else settings.REFRESH_TIMEOUT_SECONDS
        self._refresh = RefreshCoordinator()

        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout if timeout is not None else settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )
        # Separate client so the refresh call never re-enters the 401 handling
        self._refresh_http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=self.refresh_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ResilientApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()
        await self._refresh_http.aclose()

    @property
    def is_refreshing(self) -> bool:
        return self._refresh.in_flight

    @property
    def default_headers(self) -> httpx.Headers:
        return self._http.headers

    # --- Public request API ---

    async def request(
        self, method: str, url: str, access_token: Optional[str] = None, **kwargs: Any
    ) -> httpx.Response:
        """
        Send a request with the stored token. Passing ``access_token`` sends
        it with that token instead, outside the stored session: no refresh
        is attempted and no failure ends the session.
        """
        request = self._http.build_request(method, url, **kwargs)
        if access_token is not None:
            return await self.send_with_token(request, access_token)
        return await self.send_with_refresh(request)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def send_with_refresh(self, request: httpx.Request, retried: bool = False) -> httpx.Response:
        """Send ``request`` with the stored token, refreshing and retrying once on an expired token."""
        self._authorize(request)
        return await self._dispatch(request, retried)

    async def send_with_token(self, request: httpx.Request, access_token: str) -> httpx.Response:
        request.headers["Authorization"] = f"Bearer {access_token}"
        response = await self._send(request)
        if not response.is_error:
            return response
        message = error_message(response)
        if response.status_code == 401:
            raise AuthInvalidError(message or "Authentication required", status_code=401, response=response)
        raise self._error_for(response, message)

    # --- Envelope helpers ---

    @staticmethod
    def unwrap(response: httpx.Response) -> Any:
        """Return ``data`` from a `{success, data, message}` envelope."""
        try:
            envelope = ApiEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise EnvelopeError(
                "Response is not a valid API envelope", status_code=response.status_code, response=response
            ) from e
        if not envelope.success:
            raise EnvelopeError(
                envelope.message or envelope.error or "Request was not successful",
                status_code=response.status_code,
                response=response,
            )
        return envelope.data

    async def get_data(self, url: str, **kwargs: Any) -> Any:
        return self.unwrap(await self.get(url, **kwargs))

    async def post_data(self, url: str, **kwargs: Any) -> Any:
        return self.unwrap(await self.post(url, **kwargs))

    async def put_data(self, url: str, **kwargs: Any) -> Any:
        return self.unwrap(await self.put(url, **kwargs))

    async def delete_data(self, url: str, **kwargs: Any) -> Any:
        return self.unwrap(await self.delete(url, **kwargs))

    # --- Token refresh ---

    async def refresh_session(self) -> str:
        """Refresh the access token, joining a refresh that is already running."""
        if self._refresh.in_flight:
            return await self._refresh.wait()
        return await self._run_refresh()

    async def _run_refresh(self) -> str:
        self._refresh.in_flight = True
        try:
            refresh_token = self._read_refresh_token()
            if not refresh_token:
                logger.warning("No refresh token available; ending session")
                self._refresh.reject()
                self.terminator.terminate()
                raise AuthInvalidError("No refresh token available", status_code=401)

            logger.info("Access token rejected; refreshing session")
            try:
                session = await self._call_refresh_endpoint(refresh_token)
                self._persist_session(session)
            except RefreshFailedError as e:
                logger.error("Token refresh failed: %s", e)
                self._refresh.reject()
                self.terminator.terminate()
                raise

            self._refresh.resolve(session.access_token)
            logger.info("Session refreshed")
            return session.access_token
        finally:
            self._refresh.in_flight = False
            if self._refresh.waiters:
                self._refresh.reject("Token refresh was interrupted")

    async def _call_refresh_endpoint(self, refresh_token: str) -> RefreshSession:
        try:
            response = await self._refresh_http.post(REFRESH_PATH, json={"refresh_token": refresh_token})
        except httpx.RequestError as e:
            raise RefreshFailedError(f"Token refresh request failed: {e}") from e

        if response.is_error:
            raise RefreshFailedError(
                error_message(response) or "Token refresh failed",
                status_code=response.status_code,
                response=response,
            )
        try:
            envelope = ApiEnvelope.model_validate(response.json())
            session_data = envelope.data.get("session") if isinstance(envelope.data, dict) else None
            if not envelope.success or not session_data:
                raise RefreshFailedError(
                    envelope.message or "Token refresh failed", status_code=response.status_code, response=response
                )
            return RefreshSession.model_validate(session_data)
        except (ValueError, ValidationError) as e:
            raise RefreshFailedError(
                "Malformed token refresh response", status_code=response.status_code, response=response
            ) from e

    def _persist_session(self, session: RefreshSession) -> None:
        try:
            self.store.update_tokens(session.access_token, session.refresh_token, session.resolve_expires_at())
        except StorageUnavailableError as e:
            raise RefreshFailedError(f"Could not store refreshed tokens: {e}") from e
        self._http.headers["Authorization"] = f"Bearer {session.access_token}"

    def _read_refresh_token(self) -> Optional[str]:
        try:
            return self.store.refresh_token
        except StorageUnavailableError as e:
            logger.error("Could not read refresh token: %s", e)
            return None

    # --- Request pipeline ---

    def _authorize(self, request: httpx.Request) -> None:
        try:
            token = self.store.access_token
        except StorageUnavailableError as e:
            logger.error("Could not read access token: %s", e)
            token = None
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        else:
            request.headers.pop("Authorization", None)

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._http.send(request)
        except httpx.RequestError as e:
            raise NetworkError(e) from e

    def _error_for(self, response: httpx.Response, message: str) -> ApiError:
        if response.status_code == 403:
            logger.error("Permission denied: %s", message or DEFAULT_FORBIDDEN_MESSAGE)
            return ForbiddenError(message, response=response)
        return HttpError(
            message or f"Request failed with status {response.status_code}",
            status_code=response.status_code,
            response=response,
        )

    async def _dispatch(self, request: httpx.Request, retried: bool) -> httpx.Response:
        response = await self._send(request)
        if not response.is_error:
            return response

        message = error_message(response)
        if response.status_code == 401:
            return await self._handle_unauthorized(request, response, message, retried)
        raise self._error_for(response, message)

    async def _handle_unauthorized(
        self, request: httpx.Request, response: httpx.Response, message: str, retried: bool
    ) -> httpx.Response:
        if retried or not is_expired_token_message(message):
            logger.warning("Unrecoverable 401 for %s %s: %s", request.method, request.url, message)
            self.terminator.terminate()
            raise AuthInvalidError(message or "Authentication required", status_code=401, response=response)

        if self._refresh.in_flight:
            logger.debug("Refresh in flight; queueing %s %s", request.method, request.url)
            token = await self._refresh.wait()
            return await self._replay(request, token)

        try:
            token = await self._run_refresh()
        except RefreshFailedError as e:
            raise AuthExpiredError(message, status_code=401, response=response) from e
        return await self._replay(request, token)

    async def _replay(self, request: httpx.Request, token: str) -> httpx.Response:
        request.headers["Authorization"] = f"Bearer {token}"
        return await self._dispatch(request, retried=True)


__all__ = [
    "RefreshCoordinator",
    "ResilientApiClient",
    "error_message",
    "is_expired_token_message",
]
