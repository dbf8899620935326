"""
Unit Tests for the Playback Engine

Tests for:
- Track end handling: vote winner, provider fallback, exactly one advance
- Manual skip and stale end-watch timers
- Pause / resume and the paused end-watch
- Provider failures and recovery
- Progress ticker and state broadcasts
- Hot paths during a transition
"""

import threading

import pytest

from crowdqueue.config import VotingSettings
from crowdqueue.errors import InvalidInputError, ProviderUnauthorizedError
from crowdqueue.models import Identity, RejectReason, SessionPhase

from tests.fakes import make_track

START = 1000.0


# =============================================================================
# Track End
# =============================================================================


class TestTrackEnd:
    """The end-watch decides what plays next."""

    def test_provider_next_track_when_no_votes(self, engine, provider, tracks, scheduler):
        """With no votes the provider's own next track plays."""
        engine.start_track(tracks["a"])
        scheduler.advance(181)

        assert provider.count("skip_to_next") == 1
        assert engine.snapshot().playing_track.id == "next1"
        assert engine.phase is SessionPhase.PLAYING

    def test_vote_winner_plays_and_is_cleared(self, engine, provider, tracks, scheduler, alice):
        """The leader replaces the provider's next track and its votes are cleared."""
        engine.start_track(tracks["a"])
        round_before = engine.round_id
        engine.cast_vote(alice, tracks["b"])

        scheduler.advance(181)

        assert ("play", ("b", None)) in provider.calls
        assert provider.count("skip_to_next") == 0
        snapshot = engine.snapshot()
        assert snapshot.playing_track.id == "b"
        assert snapshot.votes == []
        assert engine.round_id == round_before + 1

    def test_below_min_votes_falls_back_to_provider(
        self, provider, transport, scheduler, tracks, alice
    ):
        """A leader under the threshold does not override, and keeps its votes."""
        from crowdqueue.broadcaster import StateBroadcaster
        from crowdqueue.engine import PlaybackEngine

        engine = PlaybackEngine(
            provider=provider,
            settings=VotingSettings(min_votes_to_override=2),
            broadcaster=StateBroadcaster(transport),
            scheduler=scheduler,
            clock=scheduler.clock,
        )
        engine.start_track(tracks["a"])
        engine.cast_vote(alice, tracks["b"])

        scheduler.advance(181)

        assert provider.count("skip_to_next") == 1
        assert [e.track_id for e in engine.snapshot().votes] == ["b"]
        engine.shutdown()

    def test_exactly_one_advance_per_track_end(self, engine, provider, tracks, scheduler):
        """One end of track causes one skip, no matter how long we wait after."""
        engine.start_track(tracks["a"])
        scheduler.advance(181)
        scheduler.advance(100)

        assert provider.count("skip_to_next") == 1

    def test_still_playing_rearms_instead_of_advancing(self, engine, provider, tracks, scheduler):
        """If the provider is behind (e.g. buffering), the watch re-arms."""
        engine.start_track(tracks["a"])
        scheduler.advance(60)
        provider.seek(30_000)  # provider fell behind our countdown

        scheduler.advance(121)

        assert provider.count("skip_to_next") == 0
        assert engine.has_end_watch
        assert engine.snapshot().playing_track.id == "a"

    def test_resume_nudge_after_skip(self, engine, provider, tracks, scheduler):
        """A provider that stops after skipping is told to resume once."""
        provider.stop_after_skip = True
        engine.start_track(tracks["a"])

        scheduler.advance(181)

        assert provider.count("resume") == 1
        assert engine.snapshot().progress.is_playing is True

    def test_nothing_next_goes_idle(self, engine, provider, tracks, scheduler):
        """An empty provider queue leaves the engine idle with no timers."""
        provider.queue.clear()
        engine.start_track(tracks["a"])

        scheduler.advance(181)

        assert engine.phase is SessionPhase.IDLE
        assert not engine.is_ticking
        assert not engine.has_end_watch
        assert engine.snapshot().playing_track is None


# =============================================================================
# Manual Skip
# =============================================================================


class TestForceAdvance:
    """Owner skips use the same decision as a track end."""

    def test_skip_uses_votes(self, engine, provider, tracks, alice):
        engine.start_track(tracks["a"])
        engine.cast_vote(alice, tracks["c"])

        result = engine.force_advance("manual-skip")

        assert result.via == "votes"
        assert result.track_id == "c"
        assert result.trigger == "manual-skip"

    def test_skip_without_votes_uses_provider(self, engine, provider, tracks):
        engine.start_track(tracks["a"])

        result = engine.force_advance()

        assert result.via == "provider"
        assert result.track_id == "next1"

    def test_stale_end_watch_is_ignored(self, engine, provider, tracks, scheduler):
        """An end-watch superseded by a skip must not skip again."""
        engine.start_track(tracks["a"])
        stale = max(scheduler.pending(), key=lambda t: t.due)

        engine.force_advance("manual-skip")
        stale.callback()

        assert stale.cancelled
        assert provider.count("skip_to_next") == 1

    def test_device_selection_is_used_for_play(self, engine, provider, tracks, alice):
        engine.set_device("bar-speaker")
        engine.cast_vote(alice, tracks["b"])

        engine.force_advance()

        assert ("play", ("b", "bar-speaker")) in provider.calls
        assert engine.snapshot().device_id == "bar-speaker"


# =============================================================================
# Pause / Resume
# =============================================================================


class TestPauseResume:
    """Pausing freezes progress; the end-watch waits for resume."""

    def test_pause_freezes_progress(self, engine, provider, tracks, scheduler):
        engine.start_track(tracks["a"])
        scheduler.advance(10)

        engine.pause()
        scheduler.advance(30)

        progress = engine.snapshot().progress
        assert progress.progress_ms == 10_000
        assert progress.is_playing is False

    def test_end_watch_defers_while_paused(self, engine, provider, tracks, scheduler):
        """No advance happens while paused; resume re-arms for the remainder."""
        engine.start_track(tracks["a"])
        scheduler.advance(10)
        engine.pause()

        scheduler.advance(200)
        assert provider.count("skip_to_next") == 0

        engine.resume()
        assert engine.has_end_watch
        scheduler.advance(170)
        assert provider.count("skip_to_next") == 0

        scheduler.advance(1)
        assert provider.count("skip_to_next") == 1

    def test_resume_restarts_progress(self, engine, provider, tracks, scheduler):
        engine.start_track(tracks["a"])
        scheduler.advance(10)
        engine.pause()
        scheduler.advance(5)

        engine.resume()
        scheduler.advance(3)

        progress = engine.snapshot().progress
        assert progress.is_playing is True
        assert progress.progress_ms == 13_000


# =============================================================================
# Provider Failures
# =============================================================================


class TestProviderFailures:
    """Failed transitions leave the engine idle but recoverable."""

    def test_unauthorized_at_track_end_halts(self, engine, provider, tracks, scheduler, transport):
        engine.start_track(tracks["a"])
        provider.failures["skip_to_next"] = ProviderUnauthorizedError("revoked")

        scheduler.advance(181)

        assert engine.phase is SessionPhase.IDLE
        assert not engine.is_ticking
        assert not engine.has_end_watch
        assert transport.last("state")["playingTrack"] is None

    def test_resume_after_halt_rearms(self, engine, provider, tracks, scheduler):
        engine.start_track(tracks["a"])
        provider.failures["skip_to_next"] = ProviderUnauthorizedError("revoked")
        scheduler.advance(181)

        provider.load(tracks["c"], is_playing=False)
        engine.resume()

        assert engine.phase is SessionPhase.PLAYING
        assert engine.is_ticking
        assert engine.has_end_watch
        assert engine.snapshot().playing_track.id == "c"

    def test_manual_skip_failure_raises_and_halts(self, engine, provider, tracks):
        engine.start_track(tracks["a"])
        provider.failures["skip_to_next"] = ProviderUnauthorizedError("revoked")

        with pytest.raises(ProviderUnauthorizedError):
            engine.force_advance()

        assert engine.phase is SessionPhase.IDLE

    def test_failed_play_keeps_winner_votes(self, engine, provider, tracks, alice):
        """Votes are only cleared once the winner actually started."""
        engine.start_track(tracks["a"])
        engine.cast_vote(alice, tracks["b"])
        provider.failures["play"] = ProviderUnauthorizedError("revoked")

        with pytest.raises(ProviderUnauthorizedError):
            engine.force_advance()

        assert [e.track_id for e in engine.snapshot().votes] == ["b"]


# =============================================================================
# Progress & Broadcasts
# =============================================================================


class TestBroadcasts:
    """Viewers see coherent state and steady progress."""

    def test_ticker_does_not_call_provider(self, engine, provider, tracks, scheduler):
        engine.start_track(tracks["a"])
        calls_before = len(provider.calls)

        scheduler.advance(30)

        assert len(provider.calls) == calls_before

    def test_progress_ticks_every_second(self, engine, tracks, scheduler, transport):
        engine.start_track(tracks["a"])
        before = len(transport.of("progress"))

        scheduler.advance(5)

        ticks = transport.of("progress")[before:]
        assert len(ticks) == 5
        assert [t["progress_ms"] for t in ticks] == [1000, 2000, 3000, 4000, 5000]

    def test_progress_never_exceeds_duration(self, engine, tracks, scheduler, transport):
        engine.start_track(tracks["a"])
        scheduler.advance(181)

        for payload in transport.of("progress"):
            assert payload["progress_ms"] <= payload["duration_ms"]

    def test_state_progress_matches_playing_track(self, engine, tracks, scheduler, transport, alice):
        engine.start_track(tracks["a"])
        engine.cast_vote(alice, tracks["b"])
        scheduler.advance(181)

        for payload in transport.of("state"):
            if payload["playingTrack"] is not None:
                assert payload["progress"]["trackId"] == payload["playingTrack"]["id"]

    def test_one_state_per_accepted_vote(self, engine, tracks, transport, alice):
        before = len(transport.of("state"))

        engine.cast_vote(alice, tracks["b"])
        engine.cast_vote(alice, tracks["b"])  # rejected: already voted

        assert len(transport.of("state")) == before + 1

    def test_sync_adopts_external_playback(self, engine, provider, tracks, scheduler):
        provider.load(tracks["c"], progress_ms=60_000)

        engine.sync_with_provider()

        assert engine.snapshot().playing_track.id == "c"
        scheduler.advance(120)
        assert provider.count("skip_to_next") == 0
        scheduler.advance(1)
        assert provider.count("skip_to_next") == 1

    def test_shutdown_cancels_timers(self, engine, tracks):
        engine.start_track(tracks["a"])

        engine.shutdown()

        assert not engine.is_ticking
        assert not engine.has_end_watch


# =============================================================================
# Hot Paths
# =============================================================================


class TestVotingThroughEngine:
    """Vote, settings and search paths."""

    def test_empty_track_id_rejected(self, engine, alice):
        with pytest.raises(InvalidInputError):
            engine.cast_vote(alice, make_track(""))

    def test_banned_user_cannot_vote(self, engine, tracks):
        engine.update_settings({"bannedUsers": "ip:10.9.9.9"})

        outcome = engine.cast_vote(Identity("mallory", "10.9.9.9"), tracks["b"])

        assert not outcome.accepted
        assert outcome.reason is RejectReason.BANNED

    def test_ban_purges_existing_votes(self, engine, tracks, transport, alice):
        engine.cast_vote(alice, tracks["evil"])

        result = engine.update_settings({"bannedArtists": "Banned Band"})

        assert result.purged_track_ids == ["evil"]
        assert engine.snapshot().votes == []
        assert transport.last("state")["votes"] == []

    def test_invalid_settings_field_is_ignored(self, engine):
        result = engine.update_settings({"votePolicy": "bogus", "minVotesToOverride": 3})

        assert "votePolicy" in result.rejected
        assert result.settings["minVotesToOverride"] == 3
        assert result.settings["votePolicy"] == "perTrack"

    def test_switching_to_per_round_starts_a_round(self, engine):
        before = engine.round_id

        engine.update_settings({"votePolicy": "perRound"})

        assert engine.round_id == before + 1

    def test_search_hides_banned_tracks(self, engine):
        engine.update_settings({"bannedArtists": ["Banned Band"]})

        assert engine.search("loud") == []
        assert [t.id for t in engine.search("alpha")] == ["a"]

    def test_ban_follows_address_when_enabled(self, engine, identities, tracks):
        identities.resolve(None, "troll", "10.0.0.66")
        engine.update_settings({"bannedUsers": "troll"})
        innocent = Identity("innocent", "10.0.0.66")
        assert engine.cast_vote(innocent, tracks["a"]).accepted

        engine.update_settings({"banFollowsAddress": True})
        outcome = engine.cast_vote(Identity("innocent", "10.0.0.66"), tracks["b"])

        assert outcome.reason is RejectReason.BANNED

    def test_vote_during_transition_counts_in_new_round(self, engine, provider, tracks, alice):
        """A vote arriving mid-transition waits and is judged against the new round."""
        engine.update_settings({"votePolicy": "perRound"})
        engine.start_track(tracks["a"])
        assert engine.cast_vote(alice, tracks["b"]).accepted

        outcomes = []
        voter = threading.Thread(
            target=lambda: outcomes.append(engine.cast_vote(alice, tracks["c"]))
        )

        def during_play():
            provider.hooks.pop("play")
            voter.start()
            voter.join(timeout=0.3)
            # Still waiting for the transition to commit
            assert voter.is_alive()

        provider.hooks["play"] = during_play
        engine.force_advance()
        voter.join(timeout=5)

        assert not voter.is_alive()
        assert outcomes[0].accepted

    def test_concurrent_votes_are_all_counted(self, engine, tracks, transport):
        """Simultaneous votes from distinct voters never lose an increment."""
        voters = 16
        barrier = threading.Barrier(voters)
        outcomes = []
        before = len(transport.of("state"))

        def cast(n):
            barrier.wait()
            outcomes.append(engine.cast_vote(Identity(f"guest{n}", f"10.1.0.{n}"), tracks["b"]))

        threads = [threading.Thread(target=cast, args=(n,)) for n in range(voters)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert all(o.accepted for o in outcomes)
        assert len(outcomes) == voters
        assert engine.ledger.entry("b").count == voters
        assert sorted(o.count for o in outcomes) == list(range(1, voters + 1))
        assert len(transport.of("state")) == before + voters
