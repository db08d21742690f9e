"""
Trade validator: per-session duplicate suppression and timestamp sanity.

Rules, in order:
1. duplicate: the trade id was already accepted in this session
2. invalid_timestamp: |trade.time - now| exceeds the configured skew
3. accept

Rejections are counted in SharedState by cause and never raised.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Optional

from hlfeed.errors import RejectReason
from hlfeed.state import SharedState
from hlfeed.types import Millis, Trade

logger = logging.getLogger(__name__)


def wall_clock_ms() -> Millis:
    return int(time.time() * 1000)


class TradeValidator:
    """
    Filters decoded trades before they reach the event bus.

    Seen ids are kept in a bounded window (oldest evicted first) so a long
    session does not grow memory without limit. ``reset()`` must be called
    when a new connection session starts.
    """

    def __init__(
        self,
        state: SharedState,
        *,
        max_clock_skew_ms: int = 300_000,
        dedup_window: int = 100_000,
        clock: Optional[Callable[[], Millis]] = None,
        name: str = "validator",
    ) -> None:
        if max_clock_skew_ms <= 0:
            raise ValueError(f"max_clock_skew_ms must be positive, got {max_clock_skew_ms}")
        if dedup_window <= 0:
            raise ValueError(f"dedup_window must be positive, got {dedup_window}")
        self._state = state
        self._max_skew_ms = max_clock_skew_ms
        self._window = dedup_window
        self._clock = clock or wall_clock_ms
        self.name = name

        self._seen: set[int] = set()
        self._order: deque[int] = deque()

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def reset(self) -> None:
        """Forget every accepted id. Called on each new session."""
        if self._seen:
            logger.debug(f"[{self.name}] Reset dedup window ({len(self._seen)} ids)")
        self._seen.clear()
        self._order.clear()

    def check(self, trade: Trade) -> Optional[RejectReason]:
        """Return None when accepted, otherwise the rejection cause."""
        if trade.tid in self._seen:
            self._state.record_rejection(RejectReason.DUPLICATE)
            logger.debug(f"[{self.name}] Duplicate trade {trade.coin} tid={trade.tid}")
            return RejectReason.DUPLICATE

        skew = abs(trade.time - self._clock())
        if skew > self._max_skew_ms:
            self._state.record_rejection(RejectReason.INVALID_TIMESTAMP)
            logger.debug(
                f"[{self.name}] Trade {trade.coin} tid={trade.tid} outside skew "
                f"({skew}ms > {self._max_skew_ms}ms)"
            )
            return RejectReason.INVALID_TIMESTAMP

        self._remember(trade.tid)
        self._state.record_trade_accepted()
        return None

    def _remember(self, tid: int) -> None:
        self._seen.add(tid)
        self._order.append(tid)
        if len(self._order) > self._window:
            self._seen.discard(self._order.popleft())
