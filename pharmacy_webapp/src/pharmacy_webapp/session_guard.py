# src/pharmacy_webapp/session_guard.py
"""
Idle-timeout guard.

Tracks the last user interaction and, once nothing has happened for the
configured timeout, invokes the inactivity callback (normally the forced
logout routine) exactly once. No server round-trip is involved.

The guard has no UI dependency: platform glue either calls
:meth:`SessionGuard.record_event` directly or dispatches input events through
an :class:`ActivitySignals` hub that the guard subscribes to.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .config import settings
from .storage import ACTIVITY_KEY, CredentialStore, StorageUnavailableError

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = (
    # Pointer
    "mousemove",
    "mousedown",
    "click",
    # Keyboard
    "keydown",
    "keypress",
    # Touch
    "touchstart",
    "touchmove",
    "scroll",
    # Window focus
    "focus",
)
VISIBILITY_EVENT = "visibilitychange"

Listener = Callable[[str, bool], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


class ActivitySignals:
    """Tiny listener registry fed with input events by the platform layer."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def add_listener(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.setdefault(event_type, [])
        if listener not in listeners:
            listeners.append(listener)

    def remove_listener(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event_type: Optional[str] = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    def dispatch(self, event_type: str, hidden: bool = False) -> None:
        for listener in list(self._listeners.get(event_type, [])):
            listener(event_type, hidden)


class SessionGuard:
    def __init__(
        self,
        store: CredentialStore,
        timeout_ms: Optional[int] = None,
        check_interval: Optional[float] = None,
        signals: Optional[ActivitySignals] = None,
        events: tuple = ACTIVITY_EVENTS,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store = store
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.INACTIVITY_TIMEOUT_MS
        self.check_interval = (
            check_interval if check_interval is not None else settings.ACTIVITY_CHECK_INTERVAL_SECONDS
        )
        self.signals = signals
        self.events = tuple(events)
        self.clock = clock

        self._initialized = False
        self._on_inactivity: Optional[Callable[[], None]] = None
        self._check_task: Optional[asyncio.Task] = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # --- Lifecycle ---

    def initialize(self, on_inactivity: Callable[[], None]) -> None:
        """
        Start tracking activity. A second call while already initialized is
        ignored and the first callback stays registered.
        """
        if self._initialized:
            logger.info("Session guard already initialized, skipping")
            return

        logger.info("Initializing session guard (timeout %d min)", self.timeout_ms // 60000)
        self._initialized = True
        self._on_inactivity = on_inactivity

        self._record_activity()
        self._attach_listeners()
        self._start_inactivity_check()

    def cleanup(self) -> None:
        """Stop tracking. No-op when not initialized."""
        if not self._initialized:
            return

        logger.info("Cleaning up session guard")
        self._detach_listeners()
        self._stop_inactivity_check()
        self._on_inactivity = None
        self._initialized = False

    def clear_activity(self) -> None:
        """Remove the activity timestamp from both stores."""
        for store in (self.store.persistent, self.store.ephemeral):
            try:
                store.remove_item(ACTIVITY_KEY)
            except StorageUnavailableError as e:
                logger.warning("Could not clear activity timestamp: %s", e)

    # --- Activity input ---

    def record_event(self, event_type: str) -> None:
        """Register one user interaction of the given type."""
        if not self._initialized or event_type not in self.events:
            return
        self._record_activity()

    def handle_visibility_change(self, hidden: bool) -> None:
        if hidden or not self._initialized:
            return
        # Time spent in the background counts towards the timeout
        self.check_inactivity()
        if self._initialized:
            self._record_activity()

    def _on_signal(self, event_type: str, hidden: bool) -> None:
        self.record_event(event_type)

    def _on_visibility_signal(self, event_type: str, hidden: bool) -> None:
        self.handle_visibility_change(hidden)

    def _attach_listeners(self) -> None:
        if self.signals is None:
            return
        for event_type in self.events:
            self.signals.add_listener(event_type, self._on_signal)
        self.signals.add_listener(VISIBILITY_EVENT, self._on_visibility_signal)

    def _detach_listeners(self) -> None:
        if self.signals is None:
            return
        for event_type in self.events:
            self.signals.remove_listener(event_type, self._on_signal)
        self.signals.remove_listener(VISIBILITY_EVENT, self._on_visibility_signal)

    # --- Timestamp ---

    def _read_timestamp(self) -> Optional[int]:
        raw = self.store.active.get_item(ACTIVITY_KEY)
        return int(raw) if raw else None

    def _record_activity(self) -> int:
        now = self.clock()
        try:
            previous = self._read_timestamp()
        except (StorageUnavailableError, ValueError):
            previous = None
        if previous is not None and previous > now:
            return previous
        try:
            self.store.active.set_item(ACTIVITY_KEY, str(now))
        except StorageUnavailableError as e:
            logger.warning("Could not record activity: %s", e)
        return now

    def _get_last_activity(self) -> int:
        try:
            last_activity = self._read_timestamp()
        except (StorageUnavailableError, ValueError) as e:
            logger.warning("Activity timestamp unreadable (%s); treating session as active", e)
            last_activity = None
        if last_activity is None:
            return self._record_activity()
        return last_activity

    # --- Inactivity check ---

    def get_remaining_time(self) -> int:
        """Milliseconds left before auto-logout, never negative."""
        inactive_ms = self.clock() - self._get_last_activity()
        return max(0, self.timeout_ms - inactive_ms)

    def is_inactive(self) -> bool:
        return self.get_remaining_time() == 0

    def check_inactivity(self) -> bool:
        """Run one check. Returns True when the inactivity callback fired."""
        if not self._initialized:
            return False

        last_activity = self._get_last_activity()
        now = self.clock()
        inactive_ms = now - last_activity
        if inactive_ms < self.timeout_ms:
            return False

        logger.warning(
            "User inactive for %d minutes (last activity %s, now %s). Triggering auto-logout",
            inactive_ms // 60000, _iso(last_activity), _iso(now),
        )
        callback = self._on_inactivity
        try:
            if callback is not None:
                callback()
        finally:
            self.cleanup()
        return True

    def _start_inactivity_check(self) -> None:
        self._stop_inactivity_check()
        if self.check_inactivity():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; periodic inactivity check must be driven by the caller")
            return
        self._check_task = loop.create_task(self._run_periodic_check())

    def _stop_inactivity_check(self) -> None:
        task, self._check_task = self._check_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run_periodic_check(self) -> None:
        while self._initialized:
            await asyncio.sleep(self.check_interval)
            try:
                self.check_inactivity()
            except Exception:
                logger.exception("Inactivity callback failed")
