# src/pharmacy_webapp/context.py

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from .api_client import ResilientApiClient
from .auth_service import AuthService
from .config import settings
from .session import Navigator, SessionTerminator
from .session_guard import ActivitySignals, SessionGuard
from .storage import CredentialStore, EphemeralStore, PersistentStore


@dataclass
class SessionContext:
    store: CredentialStore
    signals: ActivitySignals
    guard: SessionGuard
    navigator: Navigator
    terminator: SessionTerminator
    client: ResilientApiClient
    auth: AuthService

    async def aclose(self) -> None:
        self.guard.cleanup()
        await self.client.aclose()


def create_session_context(
    storage_file: Optional[Path] = None,
    navigator: Optional[Navigator] = None,
    base_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SessionContext:
    """Wire storage, idle guard, logout routine, API client and auth service together."""
    store = CredentialStore(
        persistent=PersistentStore(storage_file or settings.STORAGE_FILE),
        ephemeral=EphemeralStore(),
    )
    signals = ActivitySignals()
    guard = SessionGuard(store, signals=signals)
    navigator = navigator or Navigator()
    terminator = SessionTerminator(store, guard, navigator)
    client = ResilientApiClient(store, terminator, base_url=base_url, transport=transport)
    auth = AuthService(client, store, guard, terminator)
    return SessionContext(
        store=store,
        signals=signals,
        guard=guard,
        navigator=navigator,
        terminator=terminator,
        client=client,
        auth=auth,
    )
