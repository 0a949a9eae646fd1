# src/pharmacy_webapp/session.py

import logging
from typing import Callable, List, Optional

from .config import settings
from .session_guard import SessionGuard
from .storage import CredentialStore, StorageUnavailableError

logger = logging.getLogger(__name__)


class Navigator:
    """Current client-side location plus the means to move away from it."""

    def __init__(self, current_path: str = "/", on_navigate: Optional[Callable[[str], None]] = None):
        self.current_path = current_path
        self.on_navigate = on_navigate
        self.history: List[str] = []

    def navigate(self, path: str) -> None:
        logger.info("Navigating from %s to %s", self.current_path, path)
        self.history.append(self.current_path)
        self.current_path = path
        if self.on_navigate is not None:
            self.on_navigate(path)


class SessionTerminator:
    """
    The one routine that destroys session state. Both the idle-timeout path
    and the API client's irrecoverable-auth path go through :meth:`terminate`.
    """

    def __init__(
        self,
        store: CredentialStore,
        guard: SessionGuard,
        navigator: Navigator,
        login_route: Optional[str] = None,
    ):
        self.store = store
        self.guard = guard
        self.navigator = navigator
        self.login_route = login_route or settings.LOGIN_ROUTE

    def clear(self) -> None:
        """Stop the guard and wipe activity and credentials from both stores."""
        self.guard.cleanup()
        self.guard.clear_activity()
        try:
            self.store.clear()
        except StorageUnavailableError as e:
            logger.error("Could not clear stored credentials: %s", e)

    def terminate(self) -> None:
        logger.warning("Terminating session and redirecting to %s", self.login_route)
        self.clear()
        if self.navigator.current_path != self.login_route:
            self.navigator.navigate(self.login_route)
