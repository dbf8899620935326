"""Configuration management for CrowdQueue."""

import logging
import re
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


class VotePolicy(str, Enum):
    """Vote eligibility modes."""

    PER_TRACK = "perTrack"
    PER_ROUND = "perRound"
    TTL = "ttl"


class EligibilityScope(str, Enum):
    """What a voter is keyed by for rate limiting."""

    IDENTITY = "identity"  # (name, address) pair
    ADDRESS = "address"  # origin address only


class TokenStore(str, Enum):
    """Where the provider credential is kept between refreshes."""

    MEMORY = "memory"
    FILE = "file"
    SSM = "ssm"


class SpotifySettings(BaseSettings):
    """Spotify API configuration."""

    model_config = SettingsConfigDict(env_prefix="SPOTIFY_")

    client_id: str = Field(description="Spotify App Client ID")
    client_secret: str = Field(description="Spotify App Client Secret")
    redirect_uri: str = Field(
        default="http://localhost:3001/auth/callback",
        description="OAuth redirect URI",
    )

    # Optional startup seed, e.g. from a previous authorization
    access_token: Optional[str] = Field(default=None)
    refresh_token: Optional[str] = Field(default=None)

    token_store: TokenStore = Field(
        default=TokenStore.MEMORY,
        description="Credential storage: memory, file or ssm",
    )
    token_cache_path: str = Field(default=".spotify_cache")
    ssm_token_param: str = Field(default="/crowdqueue/spotify_token")

    requests_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout in seconds for API and token refresh calls",
    )
    search_limit: int = Field(default=20, ge=1, le=50)


def split_list(value: Any) -> list[str]:
    """Accept a list or a newline/comma/semicolon separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        parts = re.split(r"\r?\n|,|;", value)
    elif isinstance(value, (list, tuple, set)):
        parts = [str(v) for v in value]
    else:
        raise ValueError("expected a list or a delimited string")
    return [p.strip() for p in parts if p and p.strip()]


class VotingSettings(BaseSettings):
    """Vote policy and moderation configuration.

    Mutable at runtime through :func:`apply_settings_update`.
    """

    model_config = SettingsConfigDict(env_prefix="VOTING_", validate_assignment=True)

    vote_policy: VotePolicy = Field(default=VotePolicy.PER_TRACK)
    vote_ttl_seconds: int = Field(
        default=900,
        description="Window before the same voter may vote for a track again (ttl policy)",
    )
    min_votes_to_override: int = Field(
        default=1,
        description="Votes the leader needs to replace the provider's next track",
    )
    max_duration_ms: int = Field(
        default=600_000,
        description="Tracks longer than this are treated as banned",
    )

    banned_artists: Annotated[list[str], NoDecode] = Field(default_factory=list)
    # 'id:TRACKID' for an exact id, anything else is a name substring
    banned_tracks: Annotated[list[str], NoDecode] = Field(default_factory=list)
    # 'ip:1.2.3.4' for an address, anything else is a username
    banned_users: Annotated[list[str], NoDecode] = Field(default_factory=list)

    eligibility_scope: EligibilityScope = Field(default=EligibilityScope.IDENTITY)
    ban_follows_address: bool = Field(
        default=False,
        description="A banned name also bans every other name seen from its address",
    )

    @field_validator("vote_ttl_seconds", "min_votes_to_override")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, v)

    @field_validator("max_duration_ms")
    @classmethod
    def _at_least_a_minute(cls, v: int) -> int:
        return max(60_000, v)

    @field_validator("banned_artists", "banned_tracks", "banned_users", mode="before")
    @classmethod
    def _split_lists(cls, v: Any) -> list[str]:
        return split_list(v)


class ServerSettings(BaseSettings):
    """HTTP and realtime server configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001)
    port_retries: int = Field(
        default=8,
        description="How many successive ports to try when the port is busy",
    )
    cors_allowed_origins: str = Field(default="*")
    venue_name: str = Field(default="CrowdQueue Café")


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    voting: VotingSettings = Field(default_factory=VotingSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    # Debug mode
    debug: bool = Field(default=False, description="Enable debug logging")


def load_settings() -> AppSettings:
    """Load application settings from environment."""
    return AppSettings()


# Keys accepted by the admin settings endpoint
UPDATABLE_FIELDS = {
    "votePolicy": "vote_policy",
    "voteTtlSeconds": "vote_ttl_seconds",
    "minVotesToOverride": "min_votes_to_override",
    "maxDurationMs": "max_duration_ms",
    "bannedArtists": "banned_artists",
    "bannedTracks": "banned_tracks",
    "bannedUsers": "banned_users",
    "eligibilityScope": "eligibility_scope",
    "banFollowsAddress": "ban_follows_address",
}


def apply_settings_update(
    current: VotingSettings, payload: dict[str, Any]
) -> tuple[VotingSettings, dict[str, str]]:
    """Validate an update field by field and return the updated copy.

    Fields that fail validation are left unchanged and reported; the rest are
    applied. ``current`` is never modified.

    Args:
        current: The settings in effect.
        payload: Update keyed by camelCase or snake_case field name.

    Returns:
        Tuple of (new settings, {rejected key: error message}).
    """
    draft = current.model_copy(deep=True)
    rejected: dict[str, str] = {}

    for key, value in payload.items():
        field_name = UPDATABLE_FIELDS.get(key)
        if field_name is None and key in UPDATABLE_FIELDS.values():
            field_name = key
        if field_name is None:
            continue
        if value is None:
            continue
        try:
            setattr(draft, field_name, value)
        except ValidationError as e:
            message = e.errors()[0].get("msg", str(e))
            rejected[key] = message
            logger.warning(f"Ignoring invalid setting {key}={value!r}: {message}")

    return draft, rejected


def public_settings(settings: VotingSettings) -> dict[str, Any]:
    """The updatable settings, keyed the way the admin API exposes them."""
    return {
        key: _plain(getattr(settings, field_name))
        for key, field_name in UPDATABLE_FIELDS.items()
    }


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return list(value)
    return value
