"""Moderation rules for CrowdQueue.

Ban rules are small composable predicates built from the venue's settings.
A track is banned when ANY track rule matches; an identity is banned when its
name or its address matches a user rule.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .config import VotingSettings
from .models import Track

logger = logging.getLogger(__name__)

ID_PREFIX = "id:"
IP_PREFIX = "ip:"


class BanRule(ABC):
    """Base class for track ban rules."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this rule."""
        pass

    @abstractmethod
    def matches(self, track: Track) -> bool:
        """Whether this rule bans the given track."""
        pass


class TrackIdRule(BanRule):
    """Rule: exact track id."""

    def __init__(self, track_id: str):
        self.track_id = track_id

    @property
    def name(self) -> str:
        return f"TrackId({self.track_id})"

    def matches(self, track: Track) -> bool:
        return track.id == self.track_id


class TrackNameRule(BanRule):
    """Rule: track name contains a substring (case-insensitive)."""

    def __init__(self, fragment: str):
        self.fragment = fragment.lower()

    @property
    def name(self) -> str:
        return f"TrackName(~{self.fragment})"

    def matches(self, track: Track) -> bool:
        return self.fragment in track.name.lower()


class ArtistRule(BanRule):
    """Rule: any artist contains a substring (case-insensitive)."""

    def __init__(self, fragment: str):
        self.fragment = fragment.lower()

    @property
    def name(self) -> str:
        return f"Artist(~{self.fragment})"

    def matches(self, track: Track) -> bool:
        return any(self.fragment in artist.lower() for artist in track.artist_names)


class MaxDurationRule(BanRule):
    """Rule: track is longer than the allowed maximum."""

    def __init__(self, max_duration_ms: int):
        self.max_duration_ms = max_duration_ms

    @property
    def name(self) -> str:
        return f"MaxDuration(<={self.max_duration_ms}ms)"

    def matches(self, track: Track) -> bool:
        return bool(track.duration_ms) and track.duration_ms > self.max_duration_ms


def build_track_rules(settings: VotingSettings) -> list[BanRule]:
    """Translate the ban lists into track rules."""
    rules: list[BanRule] = []
    for entry in settings.banned_tracks:
        if entry.lower().startswith(ID_PREFIX):
            track_id = entry[len(ID_PREFIX):].strip()
            if track_id:
                rules.append(TrackIdRule(track_id))
        else:
            rules.append(TrackNameRule(entry))
    for artist in settings.banned_artists:
        rules.append(ArtistRule(artist))
    if settings.max_duration_ms:
        rules.append(MaxDurationRule(settings.max_duration_ms))
    return rules


class ModerationFilter:
    """Evaluates ban rules for tracks and voters."""

    def __init__(self, settings: VotingSettings):
        """Initialize the filter with settings.

        Args:
            settings: Voting and moderation configuration.
        """
        self._track_rules: list[BanRule] = []
        self._banned_names: set[str] = set()
        self._banned_addresses: list[str] = []
        self.reload(settings)

    def reload(self, settings: VotingSettings) -> None:
        """Rebuild every rule from the given settings."""
        self._track_rules = build_track_rules(settings)

        names: set[str] = set()
        addresses: list[str] = []
        for entry in settings.banned_users:
            if entry.lower().startswith(IP_PREFIX):
                address = entry[len(IP_PREFIX):].strip()
                if address:
                    addresses.append(address)
            else:
                names.add(entry.strip().lower())
        self._banned_names = names
        self._banned_addresses = addresses

        logger.debug(
            f"Moderation rules: {self.list_rules()}, "
            f"{len(names)} banned name(s), {len(addresses)} banned address(es)"
        )

    def list_rules(self) -> list[str]:
        """Get list of active track rule names."""
        return [rule.name for rule in self._track_rules]

    def check_track(self, track: Track) -> tuple[bool, Optional[str]]:
        """Evaluate all track rules.

        Returns:
            Tuple of (banned, name of the first matching rule).
        """
        for rule in self._track_rules:
            if rule.matches(track):
                return True, rule.name
        return False, None

    def is_track_banned(self, track: Track) -> bool:
        banned, _ = self.check_track(track)
        return banned

    def filter_tracks(self, tracks: Iterable[Track]) -> list[Track]:
        """Drop banned tracks, keeping order."""
        return [t for t in tracks if not self.is_track_banned(t)]

    def is_identity_banned(
        self, name: str, address: str, aliases: Iterable[str] = ()
    ) -> bool:
        """Check a voter against the user ban rules.

        Args:
            name: Display name.
            address: Origin address.
            aliases: Other names seen from the same address; each is checked
                against the name rules too.
        """
        for banned in self._banned_addresses:
            if address and banned in address:
                return True

        for candidate in (name, *aliases):
            normalized = (candidate or "").strip().lower()
            if normalized and normalized in self._banned_names:
                return True
        return False
