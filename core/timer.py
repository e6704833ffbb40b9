"""Named wall-clock timers for container phases.

Timers are disabled by default; a disabled timer records nothing, so the
calls can stay in the hot path.
"""

import logging
import time
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class TimerInfo:
    """Start/stop marks of one named timer, in perf_counter seconds."""

    def __init__(self, start_time: float) -> None:
        self.start_time = start_time
        self.stop_time: Optional[float] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.stop_time is None:
            return None
        return (self.stop_time - self.start_time) * 1000


_times: Dict[str, TimerInfo] = {}
_enabled = False


def enable() -> None:
    global _enabled
    _enabled = True


def disable() -> None:
    global _enabled
    _enabled = False


def is_enabled() -> bool:
    return _enabled


def start(name: str) -> None:
    """Start (or restart) the timer called name."""
    if not _enabled:
        return
    _times[name] = TimerInfo(time.perf_counter())


def stop(name: str) -> None:
    """Stop the timer called name. Unknown timers are ignored."""
    if not _enabled:
        return
    info = _times.get(name)
    if info is None:
        logger.debug(f"Timer {name} was never started")
        return
    info.stop_time = time.perf_counter()
    logger.debug(
        f"Timer {name} stopped",
        extra={"timer": name, "duration_ms": round(info.duration_ms or 0.0, 2)},
    )


def get_times() -> Dict[str, TimerInfo]:
    return dict(_times)


def reset() -> None:
    _times.clear()
