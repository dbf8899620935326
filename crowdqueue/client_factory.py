"""Factory for creating the playback provider client."""

import logging

from .base_client import PlaybackProvider
from .config import SpotifySettings
from .credentials import CredentialManager
from .spotify_client import SpotifyClient
from .token_store import create_cache_handler

logger = logging.getLogger(__name__)


def create_playback_provider(
    settings: SpotifySettings,
    http_logging: bool = False,
) -> PlaybackProvider:
    """Create the Spotify provider with its credential manager wired in.

    Args:
        settings: Spotify API configuration.
        http_logging: Log every HTTP call (API and token endpoint) with timing.

    Returns:
        Configured PlaybackProvider instance.
    """
    credentials = CredentialManager(
        settings, cache_handler=create_cache_handler(settings)
    )
    provider = SpotifyClient(settings=settings, credentials=credentials)

    if http_logging:
        try:
            from .http_logging import patch_spotipy_session, setup_http_logging

            setup_http_logging()
            patch_spotipy_session(provider.api)
            patch_spotipy_session(credentials.oauth)
            logger.info("HTTP logging enabled - see crowdqueue_http.log")
        except OSError as e:
            logger.warning(f"Failed to setup HTTP logging: {e}")

    logger.info("Using Spotify as playback provider")
    return provider
