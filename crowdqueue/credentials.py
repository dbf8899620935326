"""Spotify credential lifecycle.

The :class:`CredentialManager` is handed to spotipy as its auth manager, so
every API call goes through :meth:`CredentialManager.get_access_token` first.
That is where a token close to expiry is refreshed, and where a missing or
revoked credential turns into ``ProviderUnauthorizedError``.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from spotipy.cache_handler import CacheHandler, MemoryCacheHandler
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError

from .config import SpotifySettings
from .errors import ProviderTransientError, ProviderUnauthorizedError

logger = logging.getLogger(__name__)

# Refresh when the token has less than this left
REFRESH_MARGIN_SECONDS = 60

# Assumed lifetime when the token endpoint omits expires_in
DEFAULT_EXPIRES_IN = 3600

# Required Spotify scopes for the application
REQUIRED_SCOPES = [
    "user-read-playback-state",  # Read current playback and devices
    "user-modify-playback-state",  # Play, pause, skip
    "user-read-currently-playing",  # Read currently playing
    "streaming",
]


@dataclass(frozen=True)
class Credential:
    """Access token, refresh token and expiry (epoch seconds)."""

    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: float = 0.0

    def is_fresh(self, now: float, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        return bool(self.access_token) and now < self.expires_at - margin

    @classmethod
    def from_token_info(
        cls,
        token_info: dict,
        previous: Optional["Credential"] = None,
        now: Optional[float] = None,
    ) -> "Credential":
        refresh_token = token_info.get("refresh_token")
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token
        expires_at = token_info.get("expires_at")
        if expires_at is None:
            expires_at = (time.time() if now is None else now) + int(
                token_info.get("expires_in") or DEFAULT_EXPIRES_IN
            )
        return cls(
            access_token=token_info.get("access_token"),
            refresh_token=refresh_token,
            expires_at=float(expires_at),
        )


class CredentialManager:
    """Owns the Spotify credential and keeps it valid.

    Implements the part of spotipy's auth manager protocol that
    ``spotipy.Spotify`` uses (``get_access_token``).
    """

    def __init__(
        self,
        settings: SpotifySettings,
        cache_handler: Optional[CacheHandler] = None,
        oauth: Optional[SpotifyOAuth] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the credential manager.

        Args:
            settings: Spotify API configuration.
            cache_handler: Where refreshed tokens are persisted.
            oauth: Pre-built OAuth helper (tests).
            clock: Wall clock in epoch seconds.
        """
        self.settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        self._oauth = oauth or SpotifyOAuth(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            redirect_uri=settings.redirect_uri,
            scope=" ".join(REQUIRED_SCOPES),
            cache_handler=cache_handler or MemoryCacheHandler(),
            open_browser=False,
            requests_timeout=settings.requests_timeout,
        )
        self._credential = self._seed()

    @property
    def oauth(self) -> SpotifyOAuth:
        """The underlying OAuth helper (token endpoint traffic)."""
        return self._oauth

    def _seed(self) -> Optional[Credential]:
        """Load the startup credential from the token store or configuration."""
        cached = self._oauth.cache_handler.get_cached_token()
        if cached and (cached.get("access_token") or cached.get("refresh_token")):
            logger.info("Loaded Spotify credential from token store")
            return Credential.from_token_info(cached, now=self._clock())

        if self.settings.access_token or self.settings.refresh_token:
            logger.info("Seeded Spotify credential from configuration")
            # Unknown expiry: the first call refreshes if it can
            return Credential(
                access_token=self.settings.access_token,
                refresh_token=self.settings.refresh_token,
                expires_at=0.0,
            )

        logger.info("No Spotify credential yet; visit /auth/login to authorize")
        return None

    @property
    def is_authorized(self) -> bool:
        """Whether any credential is held (it may still need a refresh)."""
        return self._credential is not None and bool(
            self._credential.access_token or self._credential.refresh_token
        )

    def authorize_url(self, state: Optional[str] = None) -> str:
        """URL the owner visits to grant access."""
        return self._oauth.get_authorize_url(state=state)

    def complete_authorization(self, code: str) -> None:
        """Exchange an authorization code for a credential.

        Raises:
            ProviderUnauthorizedError: If the code was rejected.
            ProviderTransientError: If the token endpoint could not be reached.
        """
        try:
            token_info = self._oauth.get_access_token(
                code, as_dict=True, check_cache=False
            )
        except SpotifyOauthError as e:
            raise ProviderUnauthorizedError(f"Authorization failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderTransientError(f"Token endpoint unreachable: {e}") from e

        with self._lock:
            self._credential = Credential.from_token_info(
                token_info, self._credential, now=self._clock()
            )
        logger.info("✅ Connected to Spotify")

    def get_access_token(self, as_dict: bool = False) -> str:
        """Return a usable access token, refreshing it first if needed.

        Raises:
            ProviderUnauthorizedError: No credential, or the refresh was refused.
            ProviderTransientError: The refresh timed out or the network failed.
        """
        with self._lock:
            credential = self._credential
            if credential is None:
                raise ProviderUnauthorizedError(
                    "No Spotify access token. Visit /auth/login first."
                )
            if credential.is_fresh(self._clock()):
                return credential.access_token
            credential = self._refresh(credential)
            self._credential = credential
            return credential.access_token

    def _refresh(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise ProviderUnauthorizedError(
                "Spotify access token expired and no refresh token is available"
            )
        try:
            token_info = self._oauth.refresh_access_token(credential.refresh_token)
        except SpotifyOauthError as e:
            logger.error(f"Refresh failed: {e}")
            raise ProviderUnauthorizedError(f"Token refresh refused: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"Refresh did not complete: {e}")
            raise ProviderTransientError(f"Token refresh failed: {e}") from e

        refreshed = Credential.from_token_info(token_info, credential, now=self._clock())
        if not refreshed.access_token:
            raise ProviderUnauthorizedError("Token refresh returned no access token")
        logger.info("Spotify token refreshed automatically.")
        return refreshed
