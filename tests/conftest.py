import pytest

from crowdqueue.broadcaster import StateBroadcaster
from crowdqueue.config import AppSettings, ServerSettings, SpotifySettings, VotingSettings
from crowdqueue.engine import PlaybackEngine
from crowdqueue.identity import IdentityRegistry
from crowdqueue.models import Identity

from tests.fakes import FakeProvider, ManualScheduler, RecordingTransport, make_track

# ============================================================================
# Clock & Provider Fixtures
# ============================================================================


@pytest.fixture
def scheduler():
    """Manual scheduler; its clock is shared with the provider and engine."""
    return ManualScheduler()


@pytest.fixture
def tracks():
    """A small catalogue keyed by id."""
    return {
        "a": make_track("a", "Alpha"),
        "b": make_track("b", "Bravo"),
        "c": make_track("c", "Charlie"),
        "next1": make_track("next1", "Provider Pick One"),
        "next2": make_track("next2", "Provider Pick Two"),
        "long": make_track("long", "Long Jam", duration_ms=900_000),
        "evil": make_track("evil", "Loud Song", artists="Banned Band"),
    }


@pytest.fixture
def provider(scheduler, tracks):
    """Fake provider with the catalogue and a two-track up-next queue."""
    return FakeProvider(
        scheduler.clock,
        catalogue=tracks.values(),
        queue=[tracks["next1"], tracks["next2"]],
    )


@pytest.fixture
def transport():
    return RecordingTransport()


# ============================================================================
# Settings & Engine Fixtures
# ============================================================================


@pytest.fixture
def voting_settings():
    return VotingSettings()


@pytest.fixture
def identities(scheduler):
    return IdentityRegistry(clock=scheduler.clock)


@pytest.fixture
def engine(provider, voting_settings, transport, scheduler, identities):
    """Engine wired to fakes. Nothing is playing yet."""
    eng = PlaybackEngine(
        provider=provider,
        settings=voting_settings,
        broadcaster=StateBroadcaster(transport),
        scheduler=scheduler,
        clock=scheduler.clock,
        identities=identities,
    )
    yield eng
    eng.shutdown()


@pytest.fixture
def alice():
    return Identity(name="alice", address="10.0.0.1")


@pytest.fixture
def bob():
    return Identity(name="bob", address="10.0.0.2")


@pytest.fixture
def app_settings():
    """Application settings without touching the environment's Spotify app."""
    return AppSettings(
        spotify=SpotifySettings(client_id="test-id", client_secret="test-secret"),
        voting=VotingSettings(),
        server=ServerSettings(),
    )
