"""Storage backends for the Spotify credential.

Spotipy cache handlers keep the token between refreshes. The SSM handler lets
several server instances (or a redeploy) share one authorization.
"""

import json
import logging
from typing import Optional

import boto3
from spotipy.cache_handler import CacheFileHandler, CacheHandler, MemoryCacheHandler

from .config import SpotifySettings, TokenStore

logger = logging.getLogger(__name__)


class SSMTokenCache(CacheHandler):
    """Spotipy cache handler that stores tokens in AWS SSM Parameter Store."""

    def __init__(self, param_name: str, ssm_client=None):
        self.param_name = param_name
        self.ssm = ssm_client or boto3.client("ssm")

    def get_cached_token(self) -> Optional[dict]:
        """Retrieve token from SSM."""
        try:
            response = self.ssm.get_parameter(
                Name=self.param_name, WithDecryption=True
            )
            token_info = json.loads(response["Parameter"]["Value"])
            logger.info("Retrieved token from SSM")
            return token_info
        except self.ssm.exceptions.ParameterNotFound:
            logger.warning(f"No token found in SSM at {self.param_name}")
            return None
        except Exception as e:
            logger.error(f"Failed to get token from SSM: {e}")
            return None

    def save_token_to_cache(self, token_info: dict) -> None:
        """Save token to SSM."""
        try:
            self.ssm.put_parameter(
                Name=self.param_name,
                Value=json.dumps(token_info),
                Type="SecureString",
                Overwrite=True,
            )
            logger.info("Saved token to SSM")
        except Exception as e:
            # The in-memory credential is still valid; only persistence failed
            logger.error(f"Failed to save token to SSM: {e}")


def create_cache_handler(settings: SpotifySettings) -> CacheHandler:
    """Build the cache handler selected by ``settings.token_store``."""
    if settings.token_store == TokenStore.FILE:
        logger.info(f"Keeping Spotify token in {settings.token_cache_path}")
        return CacheFileHandler(cache_path=settings.token_cache_path)

    if settings.token_store == TokenStore.SSM:
        logger.info(f"Keeping Spotify token in SSM at {settings.ssm_token_param}")
        return SSMTokenCache(settings.ssm_token_param)

    return MemoryCacheHandler()
