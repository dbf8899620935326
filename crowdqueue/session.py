"""Playback session value and timer scheduling."""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from .models import PlaybackState, ProgressRecord, Track

logger = logging.getLogger(__name__)


@dataclass
class PlaybackSession:
    """What is playing and where its progress stood at the last observation.

    ``baseline_ms`` and ``is_playing`` always come from the same observation;
    progress in between is extrapolated from ``baseline_at``.
    """

    track: Optional[Track] = None
    baseline_ms: int = 0
    baseline_at: float = 0.0  # monotonic seconds
    is_playing: bool = False
    device_id: Optional[str] = None

    def reset(self, track: Track, now: float) -> None:
        """Start a fresh track from zero."""
        self.track = track
        self.baseline_ms = 0
        self.baseline_at = now
        self.is_playing = True

    def clear(self) -> None:
        """Nothing is playing any more."""
        self.track = None
        self.baseline_ms = 0
        self.is_playing = False

    def calibrate(self, state: PlaybackState, now: float) -> None:
        """Adopt a provider observation as the new baseline.

        The observed item replaces the local track, so tracks chosen outside
        the voting system are followed too. Observations without an item are
        ignored.
        """
        if state.item is None:
            return
        self.track = state.item
        self.baseline_ms = max(0, state.progress_ms)
        self.baseline_at = now
        self.is_playing = state.is_playing

    def progress_ms(self, now: float) -> int:
        if self.track is None:
            return 0
        if not self.is_playing:
            return self.baseline_ms
        elapsed_ms = int((now - self.baseline_at) * 1000)
        progress = self.baseline_ms + max(0, elapsed_ms)
        if self.track.duration_ms:
            progress = min(progress, self.track.duration_ms)
        return progress

    def remaining_ms(self, now: float) -> int:
        if self.track is None:
            return 0
        return max(0, self.track.duration_ms - self.progress_ms(now))

    def progress(self, now: float) -> ProgressRecord:
        return ProgressRecord(
            track_id=self.track.id if self.track else None,
            progress_ms=self.progress_ms(now),
            duration_ms=self.track.duration_ms if self.track else 0,
            is_playing=self.is_playing,
        )


class TimerHandle(ABC):
    """A scheduled callback that can be cancelled."""

    @abstractmethod
    def cancel(self) -> None:
        pass


class Scheduler(ABC):
    """Runs callbacks after a delay."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Schedule ``callback`` to run once after ``delay`` seconds."""
        pass


class _ThreadTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadingScheduler(Scheduler):
    """Scheduler backed by daemon ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return _ThreadTimerHandle(timer)
