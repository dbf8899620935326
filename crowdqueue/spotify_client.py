"""Spotify API client wrapper for CrowdQueue."""

import logging
from typing import Any, Callable, Optional, TypeVar

import requests
import spotipy

from .base_client import PlaybackProvider
from .config import SpotifySettings
from .credentials import CredentialManager
from .errors import (
    InvalidInputError,
    ProviderError,
    ProviderTransientError,
    ProviderUnauthorizedError,
)
from .models import Device, PlaybackState, Track

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SpotifyClient(PlaybackProvider):
    """Wrapper around spotipy for CrowdQueue playback operations."""

    @property
    def service_name(self) -> str:
        return "Spotify"

    def __init__(
        self,
        settings: SpotifySettings,
        credentials: CredentialManager,
        client: Optional[spotipy.Spotify] = None,
    ):
        """Initialize the Spotify client.

        Args:
            settings: Spotify API configuration.
            credentials: Credential manager, used as spotipy's auth manager.
            client: Pre-built spotipy client (tests).
        """
        self.settings = settings
        self.credentials = credentials
        self._client = client or spotipy.Spotify(
            auth_manager=credentials,
            requests_timeout=settings.requests_timeout,
            # Retries would block the caller; the engine retries on its next cycle
            retries=0,
            status_retries=0,
        )

    @property
    def api(self) -> spotipy.Spotify:
        """The underlying spotipy client."""
        return self._client

    @property
    def is_authorized(self) -> bool:
        return self.credentials.is_authorized

    def authorize_url(self) -> str:
        return self.credentials.authorize_url()

    def complete_authorization(self, code: str) -> None:
        self.credentials.complete_authorization(code)

    def _call(
        self,
        operation: str,
        fn: Callable[..., T],
        *args,
        lookup: bool = False,
        **kwargs,
    ) -> T:
        """Run a spotipy call and classify its failure.

        For catalogue lookups (``lookup=True``) a 400 or 404 means the id
        itself is bad, which no retry can fix.
        """
        try:
            return fn(*args, **kwargs)
        except ProviderError:
            raise
        except spotipy.SpotifyException as e:
            if e.http_status == 401:
                raise ProviderUnauthorizedError(f"{operation}: {e.msg}") from e
            if lookup and e.http_status in (400, 404):
                raise InvalidInputError(f"{operation}: {e.msg}") from e
            if e.http_status == 404:
                logger.warning(
                    f"{operation}: no active device found. "
                    "Make sure Spotify is open on a device."
                )
            raise ProviderTransientError(f"{operation} failed: {e.msg}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderTransientError(f"{operation} failed: {e}") from e

    def get_playback_state(self) -> Optional[PlaybackState]:
        """Get information about the user's current playback.

        Returns:
            PlaybackState or None if there is no active session.
        """
        playback = self._call("get playback state", self._client.current_playback)
        if not playback:
            return None
        return self._parse_playback(playback)

    def play(self, track: Track, device_id: Optional[str] = None) -> None:
        self._call(
            "play",
            self._client.start_playback,
            device_id=device_id,
            uris=[track.uri],
        )
        logger.info(f"▶️  Playing: {track.name} by {track.artists}")

    def pause(self, device_id: Optional[str] = None) -> None:
        self._call("pause", self._client.pause_playback, device_id=device_id)

    def resume(self, device_id: Optional[str] = None) -> None:
        self._call("resume", self._client.start_playback, device_id=device_id)

    def skip_to_next(self, device_id: Optional[str] = None) -> None:
        self._call("skip", self._client.next_track, device_id=device_id)

    def get_track(self, track_id: str) -> Track:
        data = self._call("get track", self._client.track, track_id, lookup=True)
        return self._parse_track(data)

    def search(self, query: str, limit: int = 20) -> list[Track]:
        results = self._call(
            "search",
            self._client.search,
            q=query,
            limit=min(limit, 50),
            type="track",
        )
        items = (results or {}).get("tracks", {}).get("items", [])
        # Local files have no id and cannot be played by id
        return [self._parse_track(item) for item in items if item and item.get("id")]

    def list_devices(self) -> list[Device]:
        results = self._call("list devices", self._client.devices)
        return [self._parse_device(d) for d in (results or {}).get("devices", [])]

    def _parse_playback(self, playback: dict[str, Any]) -> PlaybackState:
        """Parse a playback response from the Spotify API.

        Args:
            playback: Raw /me/player response.

        Returns:
            Parsed PlaybackState; item is None for ads and podcasts.
        """
        item = playback.get("item")
        track = None
        if item and item.get("type", "track") == "track" and item.get("id"):
            track = self._parse_track(item)
        device = playback.get("device") or {}
        return PlaybackState(
            item=track,
            progress_ms=int(playback.get("progress_ms") or 0),
            is_playing=bool(playback.get("is_playing", False)),
            device_id=device.get("id"),
        )

    def _parse_track(self, track_data: dict[str, Any]) -> Track:
        """Parse a track from Spotify API response.

        Args:
            track_data: Raw API track data.

        Returns:
            Parsed Track object.
        """
        album = track_data.get("album") or {}
        images = album.get("images") or []
        # Smallest image first; Spotify lists them largest to smallest
        image = None
        for index in (2, 1, 0):
            if len(images) > index and images[index].get("url"):
                image = images[index]["url"]
                break

        return Track(
            id=track_data["id"],
            uri=track_data["uri"],
            name=track_data["name"],
            artists=", ".join(a["name"] for a in track_data.get("artists", [])),
            album=album.get("name"),
            image=image,
            duration_ms=int(track_data.get("duration_ms") or 0),
        )

    def _parse_device(self, device_data: dict[str, Any]) -> Device:
        return Device(
            id=device_data["id"],
            name=device_data.get("name", ""),
            type=device_data.get("type", "Unknown"),
            is_active=bool(device_data.get("is_active", False)),
            volume_percent=device_data.get("volume_percent"),
        )
