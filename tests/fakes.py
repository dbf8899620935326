"""Test doubles: a manual clock/scheduler, a scripted provider, a recording transport."""

from typing import Callable, Optional

from crowdqueue.base_client import PlaybackProvider
from crowdqueue.broadcaster import Transport
from crowdqueue.errors import InvalidInputError
from crowdqueue.models import Device, PlaybackState, Track
from crowdqueue.session import Scheduler, TimerHandle


def make_track(
    track_id: str,
    name: Optional[str] = None,
    artists: str = "Some Artist",
    duration_ms: int = 180_000,
) -> Track:
    return Track(
        id=track_id,
        uri=f"spotify:track:{track_id}",
        name=name or f"Track {track_id}",
        artists=artists,
        album="Album",
        duration_ms=duration_ms,
    )


# =============================================================================
# Scheduler
# =============================================================================


class ManualTimer(TimerHandle):
    def __init__(self, due: float, seq: int, callback: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Scheduler driven by a fake monotonic clock.

    Nothing fires until :meth:`advance` moves the clock past a timer's due time.
    """

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.timers: list[ManualTimer] = []
        self._seq = 0

    def clock(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        self._seq += 1
        timer = ManualTimer(self.now + max(0.0, delay), self._seq, callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.now + seconds
        while True:
            due = [t for t in self.pending() if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self.now = max(self.now, timer.due)
            timer.fired = True
            timer.callback()
        self.now = target


# =============================================================================
# Provider
# =============================================================================


class FakeProvider(PlaybackProvider):
    """In-memory provider whose playback progresses with a shared clock.

    ``queue`` is the provider's own up-next list used by ``skip_to_next``.
    ``failures`` maps a method name to an exception raised on its next call.
    ``hooks`` maps a method name to a callable run at the start of each call.
    """

    def __init__(self, clock: Callable[[], float], catalogue=(), queue=()):
        self._clock = clock
        self.catalogue = {t.id: t for t in catalogue}
        self.queue: list[Track] = list(queue)
        self.current: Optional[Track] = None
        self.is_playing = False
        self.device_id: Optional[str] = "speaker"
        self.devices: list[Device] = [Device(id="speaker", name="Bar Speaker", is_active=True)]
        self.authorized = True
        self.stop_after_skip = False
        self.calls: list[tuple[str, tuple]] = []
        self.failures: dict[str, Exception] = {}
        self.hooks: dict[str, Callable[[], None]] = {}
        self._base_ms = 0
        self._base_at = clock()

    # -- helpers ------------------------------------------------------------

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def _enter(self, name: str, *args) -> None:
        self.calls.append((name, args))
        hook = self.hooks.get(name)
        if hook is not None:
            hook()
        exc = self.failures.pop(name, None)
        if exc is not None:
            raise exc

    @property
    def progress_ms(self) -> int:
        if self.current is None:
            return 0
        progress = self._base_ms
        if self.is_playing:
            progress += int((self._clock() - self._base_at) * 1000)
        return min(progress, self.current.duration_ms)

    def seek(self, progress_ms: int) -> None:
        self._base_ms = progress_ms
        self._base_at = self._clock()

    def load(self, track: Track, progress_ms: int = 0, is_playing: bool = True) -> None:
        """Put a track on the provider as if started outside the app."""
        self.current = track
        self.is_playing = is_playing
        self.seek(progress_ms)

    # -- PlaybackProvider -----------------------------------------------------

    @property
    def service_name(self) -> str:
        return "Fake"

    @property
    def is_authorized(self) -> bool:
        return self.authorized

    def authorize_url(self) -> str:
        return "https://accounts.example/authorize"

    def complete_authorization(self, code: str) -> None:
        self._enter("complete_authorization", code)
        self.authorized = True

    def get_playback_state(self) -> Optional[PlaybackState]:
        self._enter("get_playback_state")
        if self.current is None:
            return None
        return PlaybackState(
            item=self.current,
            progress_ms=self.progress_ms,
            is_playing=self.is_playing,
            device_id=self.device_id,
        )

    def play(self, track: Track, device_id: Optional[str] = None) -> None:
        self._enter("play", track.id, device_id)
        self.load(track)

    def pause(self, device_id: Optional[str] = None) -> None:
        self._enter("pause", device_id)
        self.seek(self.progress_ms)
        self.is_playing = False

    def resume(self, device_id: Optional[str] = None) -> None:
        self._enter("resume", device_id)
        self.seek(self.progress_ms)
        self.is_playing = self.current is not None

    def skip_to_next(self, device_id: Optional[str] = None) -> None:
        self._enter("skip_to_next", device_id)
        self.current = self.queue.pop(0) if self.queue else None
        self.is_playing = self.current is not None and not self.stop_after_skip
        self.seek(0)

    def get_track(self, track_id: str) -> Track:
        self._enter("get_track", track_id)
        if track_id not in self.catalogue:
            raise InvalidInputError(f"get track: unknown id {track_id}")
        return self.catalogue[track_id]

    def search(self, query: str, limit: int = 20) -> list[Track]:
        self._enter("search", query)
        q = query.lower()
        return [t for t in self.catalogue.values() if q in t.name.lower()][:limit]

    def list_devices(self) -> list[Device]:
        self._enter("list_devices")
        return list(self.devices)


# =============================================================================
# Transport
# =============================================================================


class RecordingTransport(Transport):
    """Keeps every emitted message in order."""

    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    def emit(self, event, payload):
        self.messages.append((event, payload))

    def of(self, event: str) -> list[dict]:
        return [payload for name, payload in self.messages if name == event]

    def last(self, event: str) -> dict:
        return self.of(event)[-1]
