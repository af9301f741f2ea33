"""Rolling window of qualifying measurements per (user, rule).

This is the only mutable state the alert engine owns. It lives in memory
and is lost on restart, which at worst delays a multi-occurrence rule by
one window.

Two policies, selected by the rule:

* consecutive (``time_window_minutes is None``): a non-qualifying reading
  clears the window;
* windowed: entries older than ``time_window_minutes`` expire, and
  non-qualifying readings leave the window alone.

The rule fires once the window holds ``occurrences_required`` entries,
and firing clears it.
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta

from vitalwatch.core.storage.models import ThresholdRule


class OccurrenceTracker:
    """Thread-safe per-rule occurrence windows.

    Usage::

        tracker = OccurrenceTracker()
        if tracker.observe(rule, qualifies=True, at=measurement.timestamp):
            ...  # fire
    """

    def __init__(self) -> None:
        self._windows: dict[tuple[str, str], deque[datetime]] = {}
        self._lock = threading.Lock()

    def observe(self, rule: ThresholdRule, *, qualifies: bool, at: datetime) -> bool:
        """Record one reading for ``rule``. Returns True when the rule should fire."""
        key = (rule.user_id, rule.id)
        required = max(1, rule.occurrences_required)

        with self._lock:
            window = self._windows.setdefault(key, deque())

            if rule.time_window_minutes is not None:
                cutoff = at - timedelta(minutes=rule.time_window_minutes)
                while window and window[0] < cutoff:
                    window.popleft()
            elif not qualifies:
                window.clear()

            if qualifies:
                window.append(at)

            if len(window) >= required:
                window.clear()
                return True

            if not window:
                del self._windows[key]
            return False

    def pending(self, user_id: str, rule_id: str) -> int:
        """Qualifying readings currently held for a rule."""
        with self._lock:
            return len(self._windows.get((user_id, rule_id), ()))

    def reset(self, user_id: str, rule_id: str) -> None:
        with self._lock:
            self._windows.pop((user_id, rule_id), None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
