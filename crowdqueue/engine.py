"""Playback orchestration and vote reconciliation.

The :class:`PlaybackEngine` owns every piece of mutable venue state: the vote
ledger, the eligibility gate (and with it the Round), the playback session,
and the two timers that drive it:

* the progress ticker, which pushes extrapolated progress every second and
  never talks to the provider;
* the end-watch, a single-shot timer armed for shortly after the current
  track should end, which decides what plays next.

Two locks keep this consistent. ``_state`` (a condition over an RLock) guards
the in-memory state and is only ever held briefly. ``_transition`` serializes
the cold paths that call the provider (start, advance, end-watch, pause,
resume). While a transition is in flight the phase is ``transitioning``:
votes, settings writes and device changes wait for it to commit and are then
evaluated against the new round, and no broadcast is sent until it commits.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Optional

from .base_client import PlaybackProvider
from .broadcaster import StateBroadcaster
from .config import VotingSettings, apply_settings_update, public_settings
from .eligibility import EligibilityGate
from .errors import InvalidInputError, ProviderError
from .identity import IdentityRegistry
from .ledger import VoteLedger
from .moderation import ModerationFilter
from .models import (
    AdvanceResult,
    Identity,
    PlaybackState,
    SessionPhase,
    SettingsUpdateResult,
    StateSnapshot,
    Track,
    VoteOutcome,
)
from .session import PlaybackSession, Scheduler, ThreadingScheduler, TimerHandle

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0

# The end-watch fires this long after the expected end, and never sooner
# than END_WATCH_MIN_MS from now
END_WATCH_SLACK_MS = 1000
END_WATCH_MIN_MS = 1000

# A track with less than this left counts as finished when the end-watch fires
END_TOLERANCE_MS = 1000


class PlaybackEngine:
    """Decides what plays, counts votes, and keeps viewers in sync."""

    def __init__(
        self,
        provider: PlaybackProvider,
        settings: VotingSettings,
        broadcaster: StateBroadcaster,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
        identities: Optional[IdentityRegistry] = None,
    ):
        """Initialize the engine.

        Args:
            provider: Playback provider the engine drives.
            settings: Initial vote policy and moderation settings.
            broadcaster: Where state and progress updates go.
            scheduler: Timer backend; threading timers by default.
            clock: Monotonic clock in seconds.
            identities: Registry used when bans follow addresses.
        """
        self.provider = provider
        self.settings = settings
        self.broadcaster = broadcaster
        self.scheduler = scheduler or ThreadingScheduler()
        self.identities = identities
        self._clock = clock

        self.moderation = ModerationFilter(settings)
        self.eligibility = EligibilityGate(settings)
        self.ledger = VoteLedger(self.eligibility, self.moderation, aliases=self._aliases)
        self.session = PlaybackSession()

        self._phase = SessionPhase.IDLE
        self._state = threading.Condition(threading.RLock())
        self._transition = threading.Lock()

        self._end_watch: Optional[TimerHandle] = None
        self._end_watch_generation = 0
        self._ticker: Optional[TimerHandle] = None
        self._ticker_generation = 0

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def round_id(self) -> int:
        return self.eligibility.current_round

    @property
    def is_ticking(self) -> bool:
        return self._ticker is not None

    @property
    def has_end_watch(self) -> bool:
        return self._end_watch is not None

    def snapshot(self) -> StateSnapshot:
        """Current leaderboard, track, device and extrapolated progress."""
        with self._state:
            return self._snapshot_locked()

    def public_settings(self) -> dict[str, Any]:
        with self._state:
            return public_settings(self.settings)

    # ------------------------------------------------------------------
    # Hot paths: never call the provider
    # ------------------------------------------------------------------

    def cast_vote(self, identity: Identity, track: Track) -> VoteOutcome:
        """Count a vote for a track already fetched from the provider.

        Raises:
            InvalidInputError: If the track has no id.
        """
        if not track.id:
            raise InvalidInputError("trackId required")

        with self._state:
            self._wait_for_commit()
            outcome = self.ledger.cast_vote(identity, track, self._clock())
            if outcome.accepted:
                self._publish_state_locked()
            return outcome

    def is_identity_banned(self, identity: Identity) -> bool:
        with self._state:
            return self.moderation.is_identity_banned(
                identity.name, identity.address, self._aliases(identity.address)
            )

    def set_device(self, device_id: Optional[str]) -> None:
        """Select the output device used for future play calls."""
        with self._state:
            self._wait_for_commit()
            self.session.device_id = device_id or None
            logger.info(f"Output device set to {device_id or 'provider default'}")
            self._publish_state_locked()

    def update_settings(self, payload: dict[str, Any]) -> SettingsUpdateResult:
        """Apply an admin settings write.

        Each field is validated on its own; invalid ones are ignored. Votes
        for tracks that are now banned are purged and the new state is
        broadcast before this returns.
        """
        if not isinstance(payload, dict):
            raise InvalidInputError("settings payload must be an object")

        with self._state:
            self._wait_for_commit()
            updated, rejected = apply_settings_update(self.settings, payload)
            self.settings = updated
            self.eligibility.configure(updated)
            self.moderation.reload(updated)
            purged = self.ledger.purge_banned(self.moderation.is_track_banned)
            self._publish_state_locked()
            return SettingsUpdateResult(
                settings=public_settings(updated),
                rejected=rejected,
                purged_track_ids=purged,
            )

    def search(self, query: str, limit: int = 20) -> list[Track]:
        """Search the provider and hide banned tracks."""
        query = (query or "").strip()
        if not query:
            return []
        tracks = self.provider.search(query, limit=limit)
        with self._state:
            return self.moderation.filter_tracks(tracks)

    # ------------------------------------------------------------------
    # Cold paths: serialized, may call the provider
    # ------------------------------------------------------------------

    def start_track(self, track: Track) -> AdvanceResult:
        """Play a specific track now, as if it had won the vote."""
        with self._transition:
            with self._state:
                self._cancel_end_watch_locked()
                self._phase = SessionPhase.TRANSITIONING
            try:
                self._start_track(track)
            except Exception:
                self._halt()
                raise
            return AdvanceResult(via="votes", trigger="start", track_id=track.id)

    def force_advance(self, trigger: str = "manual-skip") -> AdvanceResult:
        """Owner skip: same decision as the end of a track, right now.

        Raises:
            ProviderError: The provider failed; the engine is left idle.
        """
        with self._transition:
            return self._advance(trigger)

    def pause(self) -> None:
        """Pause the provider and freeze local progress.

        The end-watch stays armed; if it fires while paused it defers.
        """
        with self._transition:
            with self._state:
                device_id = self.session.device_id
            self.provider.pause(device_id)
            state = self.provider.get_playback_state()
            with self._state:
                now = self._clock()
                if state is not None:
                    self.session.calibrate(state, now)
                # The provider may still report playing for a moment
                self.session.baseline_ms = self.session.progress_ms(now)
                self.session.baseline_at = now
                self.session.is_playing = False
                logger.info("⏸️  Paused")
                self._publish_state_locked()

    def resume(self) -> None:
        """Resume the provider and re-arm the ticker and the end-watch."""
        with self._transition:
            with self._state:
                device_id = self.session.device_id
            self.provider.resume(device_id)
            state = self.provider.get_playback_state()
            if state is not None and state.item is not None and not state.is_playing:
                # We just told it to play; a stale flag would freeze progress
                state = replace(state, is_playing=True)
            logger.info("▶️  Resumed")
            self._arm_from_observation(state)

    def sync_with_provider(self) -> None:
        """Adopt whatever the provider is playing right now (startup)."""
        with self._transition:
            state = self.provider.get_playback_state()
            self._arm_from_observation(state)

    def shutdown(self) -> None:
        """Cancel both timers."""
        with self._state:
            self._cancel_end_watch_locked()
            self._stop_ticker_locked()

    # ------------------------------------------------------------------
    # Transitions (caller holds _transition)
    # ------------------------------------------------------------------

    def _advance(self, trigger: str) -> AdvanceResult:
        with self._state:
            self._cancel_end_watch_locked()
            self._phase = SessionPhase.TRANSITIONING
            winner = self.ledger.resolve_winner(self.settings.min_votes_to_override)
            device_id = self.session.device_id

        try:
            if winner is not None:
                logger.info(
                    f"🏆 Crowd favourite: {winner.track.name} "
                    f"({winner.count} vote(s)) [{trigger}]"
                )
                self._start_track(winner.track)
                return AdvanceResult(via="votes", trigger=trigger, track_id=winner.track.id)

            logger.info(f"No crowd favourite; advancing to the provider's next track [{trigger}]")
            self.provider.skip_to_next(device_id)
            state = self.provider.get_playback_state()
            if state is not None and state.item is not None and not state.is_playing:
                self.provider.resume(device_id)
                state = self.provider.get_playback_state()
            self._arm_from_observation(state)
            track_id = state.item.id if state is not None and state.item else None
            return AdvanceResult(via="provider", trigger=trigger, track_id=track_id)
        except Exception:
            self._halt()
            raise

    def _start_track(self, track: Track) -> None:
        with self._state:
            device_id = self.session.device_id
        self.provider.play(track, device_id)

        with self._state:
            self.session.reset(track, self._clock())
            self.eligibility.advance_round()
            self.ledger.clear_track(track.id)
            self._commit_locked(SessionPhase.PLAYING)
            self._publish_state_locked()
            self._start_ticker_locked()

        # Correct for provider start-up latency before trusting the countdown
        state = self.provider.get_playback_state()
        self._arm_from_observation(state)

    def _arm_from_observation(self, state: Optional[PlaybackState]) -> None:
        with self._state:
            if state is None or state.item is None:
                logger.warning("Provider reports nothing playing; going idle")
                self._go_idle_locked()
                return

            self.session.calibrate(state, self._clock())
            self._commit_locked(SessionPhase.PLAYING)
            self._publish_state_locked()
            self._start_ticker_locked()

            wait_ms = max(END_WATCH_MIN_MS, state.remaining_ms + END_WATCH_SLACK_MS)
            self._arm_end_watch_locked(wait_ms / 1000)
            logger.debug(f"End-watch armed for {state.item.name} in {wait_ms}ms")

    def _on_end_watch(self, generation: int) -> None:
        """End-watch timer callback. Never raises."""
        with self._transition:
            try:
                with self._state:
                    if generation != self._end_watch_generation:
                        logger.debug("Ignoring stale end-watch")
                        return
                    self._end_watch = None
                    if not self.session.is_playing:
                        logger.debug("End-watch fired while paused; waiting for resume")
                        return
                    current = self.session.track

                state = self.provider.get_playback_state()
                if self._still_playing(current, state):
                    logger.debug("Track still playing; re-arming end-watch")
                    self._arm_from_observation(state)
                    return

                self._advance("track-end")

            except ProviderError as e:
                logger.error(f"Provider error at end of track: {e}")
                self._halt()
            except Exception as e:
                logger.error(f"Unexpected error at end of track: {e}", exc_info=True)
                self._halt()

    @staticmethod
    def _still_playing(current: Optional[Track], state: Optional[PlaybackState]) -> bool:
        return (
            current is not None
            and state is not None
            and state.item is not None
            and state.item.id == current.id
            and state.is_playing
            and state.remaining_ms > END_TOLERANCE_MS
        )

    def _halt(self) -> None:
        """Fall back to idle after a failed transition."""
        with self._state:
            already_idle = (
                self._phase is SessionPhase.IDLE
                and self._ticker is None
                and self._end_watch is None
            )
            if not already_idle:
                self._go_idle_locked()

    # ------------------------------------------------------------------
    # State helpers (caller holds _state)
    # ------------------------------------------------------------------

    def _aliases(self, address: str) -> list[str]:
        if self.settings.ban_follows_address and self.identities is not None:
            return self.identities.names_at(address)
        return []

    def _wait_for_commit(self) -> None:
        while self._phase is SessionPhase.TRANSITIONING:
            self._state.wait()

    def _commit_locked(self, phase: SessionPhase) -> None:
        self._phase = phase
        self._state.notify_all()

    def _go_idle_locked(self) -> None:
        self._cancel_end_watch_locked()
        self._stop_ticker_locked()
        self.session.clear()
        self._commit_locked(SessionPhase.IDLE)
        self._publish_state_locked()

    def _snapshot_locked(self) -> StateSnapshot:
        now = self._clock()
        return StateSnapshot(
            votes=[replace(entry) for entry in self.ledger.leaderboard()],
            playing_track=self.session.track,
            device_id=self.session.device_id,
            progress=self.session.progress(now),
            round_id=self.eligibility.current_round,
            phase=self._phase,
        )

    def _publish_state_locked(self) -> None:
        self.broadcaster.publish_state(self._snapshot_locked())

    def _arm_end_watch_locked(self, delay: float) -> None:
        self._cancel_end_watch_locked()
        generation = self._end_watch_generation
        self._end_watch = self.scheduler.call_later(
            delay, lambda: self._on_end_watch(generation)
        )

    def _cancel_end_watch_locked(self) -> None:
        if self._end_watch is not None:
            self._end_watch.cancel()
            self._end_watch = None
        # Any fire already in flight is now stale
        self._end_watch_generation += 1

    def _start_ticker_locked(self) -> None:
        self._stop_ticker_locked()
        generation = self._ticker_generation
        self.broadcaster.publish_progress(self.session.progress(self._clock()))
        self._ticker = self.scheduler.call_later(
            TICK_SECONDS, lambda: self._tick(generation)
        )

    def _stop_ticker_locked(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        self._ticker_generation += 1

    def _tick(self, generation: int) -> None:
        with self._state:
            if generation != self._ticker_generation:
                return
            if self._phase is not SessionPhase.TRANSITIONING and self.session.track:
                self.broadcaster.publish_progress(self.session.progress(self._clock()))
            self._ticker = self.scheduler.call_later(
                TICK_SECONDS, lambda: self._tick(generation)
            )
