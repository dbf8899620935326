"""Abstract base class for playback provider clients."""

from abc import ABC, abstractmethod
from typing import Optional

from .models import Device, PlaybackState, Track


class PlaybackProvider(ABC):
    """Abstract interface for the streaming service that actually plays audio.

    The engine treats the provider as authoritative but slow. Every method may
    raise ``ProviderUnauthorizedError`` when no valid credential is available,
    or ``ProviderTransientError`` for anything worth retrying later.
    """

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Return the name of this service (e.g., 'Spotify')."""
        pass

    @property
    @abstractmethod
    def is_authorized(self) -> bool:
        """Whether a credential is currently held."""
        pass

    @abstractmethod
    def authorize_url(self) -> str:
        """URL the owner visits to grant the server access."""
        pass

    @abstractmethod
    def complete_authorization(self, code: str) -> None:
        """Exchange the code from the authorization callback for a credential."""
        pass

    @abstractmethod
    def get_playback_state(self) -> Optional[PlaybackState]:
        """Get the current playback observation.

        Returns:
            PlaybackState, or None if the provider has no active session.
        """
        pass

    @abstractmethod
    def play(self, track: Track, device_id: Optional[str] = None) -> None:
        """Start playing a track, replacing whatever is playing.

        Args:
            track: Track to play.
            device_id: Output device; the active device when omitted.
        """
        pass

    @abstractmethod
    def pause(self, device_id: Optional[str] = None) -> None:
        """Pause playback."""
        pass

    @abstractmethod
    def resume(self, device_id: Optional[str] = None) -> None:
        """Resume playback of the current item."""
        pass

    @abstractmethod
    def skip_to_next(self, device_id: Optional[str] = None) -> None:
        """Advance to the provider's own next track."""
        pass

    @abstractmethod
    def get_track(self, track_id: str) -> Track:
        """Fetch full metadata for one track.

        Args:
            track_id: Service-specific track ID.

        Returns:
            Track object.

        Raises:
            InvalidInputError: If the id is malformed or unknown.
        """
        pass

    @abstractmethod
    def search(self, query: str, limit: int = 20) -> list[Track]:
        """Search the catalogue for tracks.

        Args:
            query: Free-text search.
            limit: Maximum number of tracks to return.

        Returns:
            List of Track objects.
        """
        pass

    @abstractmethod
    def list_devices(self) -> list[Device]:
        """List the account's available playback devices."""
        pass
