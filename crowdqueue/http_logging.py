"""HTTP request/response logging for debugging Spotify API calls.

Provides millisecond-precision timing and logs to a separate file.
Strips tokens and authorization codes from the records.
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

# Create a dedicated logger for HTTP traffic
http_logger = logging.getLogger("crowdqueue.http")

# Headers to redact from logs
SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie"}

# Form/query fields to redact (token endpoint traffic)
SENSITIVE_FIELDS = {"code", "refresh_token", "access_token", "client_secret"}

REDACTED = "***REDACTED***"


def setup_http_logging(
    log_file: Optional[Path] = None,
    console: bool = False,
) -> None:
    """Configure HTTP request/response logging.

    Args:
        log_file: Path to log file. Defaults to crowdqueue_http.log
        console: Also log to console (very verbose!)
    """
    log_file = log_file or Path("crowdqueue_http.log")

    # Create formatter with millisecond precision
    formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_file, mode="a")
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    http_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(logging.DEBUG)
        http_logger.addHandler(console_handler)

    http_logger.setLevel(logging.DEBUG)
    http_logger.propagate = False  # Don't bubble up to root logger

    http_logger.info(f"=== HTTP logging started at {datetime.now().isoformat()} ===")


def _sanitize_headers(headers: dict) -> dict:
    """Remove sensitive headers from log output."""
    return {
        k: (REDACTED if k.lower() in SENSITIVE_HEADERS else v)
        for k, v in (headers or {}).items()
    }


def _sanitize_fields(fields: Any) -> Any:
    """Redact credential fields in params or form bodies."""
    if not isinstance(fields, dict):
        return fields
    return {
        k: (REDACTED if str(k).lower() in SENSITIVE_FIELDS else v)
        for k, v in fields.items()
    }


def _truncate(text: str, max_len: int = 2000) -> str:
    """Truncate long response bodies."""
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"... [truncated, {len(text)} total chars]"


class TimedRequestsSession:
    """Wrapper around requests.Session that logs all HTTP calls with timing."""

    def __init__(self, session):
        self._session = session
        self._request_counter = 0

    def request(self, method: str, url: str, **kwargs):
        """Make a request and log it with timing."""
        self._request_counter += 1
        req_id = self._request_counter

        http_logger.debug(
            f"[REQ-{req_id}] --> {method} {url}\n"
            f"    Params: {_sanitize_fields(kwargs.get('params'))}\n"
            f"    Data: {_sanitize_fields(kwargs.get('data'))}\n"
            f"    Headers: {_sanitize_headers(kwargs.get('headers'))}"
        )

        start = time.perf_counter()
        try:
            response = self._session.request(method, url, **kwargs)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            http_logger.error(f"[REQ-{req_id}] <-- ERROR after {elapsed_ms:.1f}ms: {e}")
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000
        # Token responses carry credentials in the body
        body = "<token response>" if "/api/token" in url else _truncate(response.text)
        http_logger.debug(
            f"[REQ-{req_id}] <-- {response.status_code} {response.reason} "
            f"({elapsed_ms:.1f}ms)\n"
            f"    Headers: {_sanitize_headers(dict(response.headers))}\n"
            f"    Body: {body}"
        )
        return response

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    # Delegate all other attributes to the wrapped session
    def __getattr__(self, name):
        return getattr(self._session, name)


def patch_spotipy_session(owner) -> None:
    """Patch a spotipy object (API client or OAuth helper) to log its HTTP calls.

    Args:
        owner: A spotipy.Spotify or SpotifyOAuth instance
    """
    if getattr(owner, "_http_logging_patched", False):
        return  # Already patched

    # Spotipy uses _session internally
    if hasattr(owner, "_session"):
        owner._session = TimedRequestsSession(owner._session)
        owner._http_logging_patched = True
        http_logger.info(f"Patched {type(owner).__name__} for HTTP logging")
