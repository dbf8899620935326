"""Data models for CrowdQueue."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class Track:
    """A playable track as last seen from the provider."""

    id: str
    uri: str
    name: str
    artists: str  # joined artist names
    album: Optional[str] = None
    image: Optional[str] = None
    duration_ms: int = 0

    @property
    def artist_names(self) -> list[str]:
        """Get list of artist names for this track."""
        return [a.strip() for a in self.artists.split(",") if a.strip()]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "uri": self.uri,
            "name": self.name,
            "artists": self.artists,
            "album": self.album,
            "image": self.image,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class Device:
    """A playback device reported by the provider."""

    id: str
    name: str
    type: str = "Unknown"
    is_active: bool = False
    volume_percent: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "is_active": self.is_active,
            "volume_percent": self.volume_percent,
        }


@dataclass(frozen=True)
class PlaybackState:
    """A single observation of the provider's playback."""

    item: Optional[Track]
    progress_ms: int = 0
    is_playing: bool = False
    device_id: Optional[str] = None

    @property
    def remaining_ms(self) -> int:
        if self.item is None:
            return 0
        return max(0, self.item.duration_ms - self.progress_ms)


@dataclass(frozen=True)
class Identity:
    """A voter: display name plus origin address.

    Two identities with the same name from different addresses are distinct.
    """

    name: str
    address: str

    @property
    def normalized_name(self) -> str:
        return self.name.strip().lower()


@dataclass
class VoteEntry:
    """Aggregated votes for one candidate track."""

    track: Track
    count: int = 0
    # Ledger sequence number at which the current count was reached
    reached_at: int = 0

    @property
    def track_id(self) -> str:
        return self.track.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "trackId": self.track.id,
            "count": self.count,
            "track": self.track.to_dict(),
        }


class RejectReason(str, Enum):
    """Why a vote was not counted."""

    BANNED = "banned"
    ALREADY_VOTED = "already_voted"


@dataclass(frozen=True)
class VoteOutcome:
    """Result of casting a vote."""

    accepted: bool
    reason: Optional[RejectReason] = None
    detail: str = ""
    count: int = 0

    @classmethod
    def rejected(cls, reason: RejectReason, detail: str) -> "VoteOutcome":
        return cls(accepted=False, reason=reason, detail=detail)


class SessionPhase(str, Enum):
    """Playback state machine phases."""

    IDLE = "idle"
    PLAYING = "playing"
    TRANSITIONING = "transitioning"


@dataclass(frozen=True)
class ProgressRecord:
    """Extrapolated playback progress, sent on the high-frequency channel."""

    track_id: Optional[str]
    progress_ms: int
    duration_ms: int
    is_playing: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "trackId": self.track_id,
            "progress_ms": self.progress_ms,
            "duration_ms": self.duration_ms,
            "is_playing": self.is_playing,
        }


@dataclass(frozen=True)
class StateSnapshot:
    """Everything a viewer needs to render the venue's state."""

    votes: list[VoteEntry]
    playing_track: Optional[Track]
    device_id: Optional[str]
    progress: ProgressRecord
    round_id: int
    phase: SessionPhase

    def to_dict(self) -> dict[str, Any]:
        return {
            "votes": [entry.to_dict() for entry in self.votes],
            "playingTrack": self.playing_track.to_dict() if self.playing_track else None,
            "deviceId": self.device_id,
            "progress": self.progress.to_dict(),
            "round": self.round_id,
            "phase": self.phase.value,
        }


@dataclass(frozen=True)
class AdvanceResult:
    """How the engine moved on to the next track."""

    via: str  # "votes" or "provider"
    trigger: str
    track_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"via": self.via, "trigger": self.trigger}
        if self.track_id is not None:
            data["trackId"] = self.track_id
        return data


@dataclass
class UserRecord:
    """A voter as shown on the owner dashboard."""

    user_id: str
    username: Optional[str]
    address: str
    avatar: Optional[str] = None
    created_at: float = 0.0
    last_seen: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "avatar": self.avatar,
            "ip": self.address,
            "lastSeen": int(self.last_seen * 1000),
        }


@dataclass
class SettingsUpdateResult:
    """Outcome of an admin settings write."""

    settings: dict[str, Any]
    rejected: dict[str, str] = field(default_factory=dict)
    purged_track_ids: list[str] = field(default_factory=list)
