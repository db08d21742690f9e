"""
Shared state read by metrics, health and UI consumers.

Two paths:
- hot counters: plain integer attributes written only from the event loop
  thread by the connection manager. Every write is a single statement with no
  await in between, and reads of an int attribute are atomic, so readers never
  see a torn value.
- session metadata: guarded by one ``threading.Lock`` that is held only to
  read or replace the session record, never across I/O.

Counters are cumulative for the lifetime of the process; a reconnect replaces
the session but never resets a counter.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from hlfeed.errors import RejectReason
from hlfeed.types import ConnectionSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterSnapshot:
    """Point-in-time copy of every counter and gauge."""

    messages_received: int = 0
    trades_accepted: int = 0
    trades_rejected_duplicate: int = 0
    trades_rejected_invalid: int = 0
    frames_malformed: int = 0
    reconnect_attempts: int = 0
    events_dropped: int = 0
    connected: bool = False

    @property
    def trades_rejected(self) -> int:
        return self.trades_rejected_duplicate + self.trades_rejected_invalid


class SharedState:
    """
    Process-wide counters plus the current connection session.

    One instance is built at startup and handed to every task that needs it.
    """

    def __init__(self) -> None:
        # Hot counters (monotonic)
        self._messages_received = 0
        self._trades_accepted = 0
        self._trades_rejected_duplicate = 0
        self._trades_rejected_invalid = 0
        self._frames_malformed = 0
        self._reconnect_attempts = 0
        self._events_dropped = 0

        # Gauges
        self._connected = False
        self._last_message_mono: Optional[float] = None
        self._last_message_wall: Optional[float] = None

        # Cold structured state
        self._session_lock = threading.Lock()
        self._session: Optional[ConnectionSession] = None
        self._started_at = datetime.now(timezone.utc)

    # --- Counter writes (event loop thread only) ---

    def record_message(self) -> None:
        self._messages_received += 1
        self._last_message_mono = time.monotonic()
        self._last_message_wall = time.time()

    def record_trade_accepted(self) -> None:
        self._trades_accepted += 1

    def record_rejection(self, reason: RejectReason) -> None:
        if reason == RejectReason.DUPLICATE:
            self._trades_rejected_duplicate += 1
        else:
            self._trades_rejected_invalid += 1

    def record_malformed(self, count: int = 1) -> None:
        self._frames_malformed += count

    def record_reconnect(self) -> int:
        """Increment the reconnect counter and return the new cumulative value."""
        self._reconnect_attempts += 1
        return self._reconnect_attempts

    def record_drop(self) -> None:
        self._events_dropped += 1

    def set_connected(self, connected: bool) -> None:
        if self._connected != connected:
            logger.debug(f"Connected gauge -> {int(connected)}")
        self._connected = connected
        with self._session_lock:
            if self._session is not None:
                self._session = replace(self._session, is_live=connected)

    # --- Counter reads ---

    @property
    def messages_received(self) -> int:
        return self._messages_received

    @property
    def trades_accepted(self) -> int:
        return self._trades_accepted

    @property
    def trades_rejected_duplicate(self) -> int:
        return self._trades_rejected_duplicate

    @property
    def trades_rejected_invalid(self) -> int:
        return self._trades_rejected_invalid

    @property
    def frames_malformed(self) -> int:
        return self._frames_malformed

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def events_dropped(self) -> int:
        return self._events_dropped

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def last_message_at(self) -> Optional[datetime]:
        if self._last_message_wall is None:
            return None
        return datetime.fromtimestamp(self._last_message_wall, tz=timezone.utc)

    def seconds_since_message(self) -> Optional[float]:
        if self._last_message_mono is None:
            return None
        return time.monotonic() - self._last_message_mono

    def snapshot(self) -> CounterSnapshot:
        return CounterSnapshot(
            messages_received=self._messages_received,
            trades_accepted=self._trades_accepted,
            trades_rejected_duplicate=self._trades_rejected_duplicate,
            trades_rejected_invalid=self._trades_rejected_invalid,
            frames_malformed=self._frames_malformed,
            reconnect_attempts=self._reconnect_attempts,
            events_dropped=self._events_dropped,
            connected=self._connected,
        )

    # --- Session (lock-protected) ---

    def new_session(self) -> ConnectionSession:
        """Replace the current session with a fresh one and return it."""
        session = ConnectionSession(
            session_id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
        )
        with self._session_lock:
            self._session = session
        return session

    def session(self) -> Optional[ConnectionSession]:
        """Read-only snapshot of the current session, with its last activity time."""
        last_activity = self.last_message_at
        with self._session_lock:
            current = self._session
        if current is None:
            return None
        if last_activity is None or last_activity < current.created_at:
            return current
        return replace(current, last_activity_at=last_activity)
