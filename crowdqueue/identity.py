"""Voter identities as seen by the HTTP layer.

Pairing itself happens elsewhere; this registry only remembers who has joined,
resolves each request to an :class:`Identity`, and keeps the list the owner
dashboard shows.
"""

import logging
import secrets
import threading
import time
import uuid
from typing import Callable, Optional

from .models import Identity, UserRecord

logger = logging.getLogger(__name__)

GUEST_NAME = "Guest"
DEFAULT_AVATAR = "🎧"


def _normalize(name: Optional[str]) -> str:
    return (name or "").strip().lower()


class IdentityRegistry:
    """Tokens, anonymous voters and the dashboard users list."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        # token -> record
        self._tokens: dict[str, UserRecord] = {}
        # user id -> record (dashboard view; token holders are keyed by token)
        self._users: dict[str, UserRecord] = {}

    def issue_token(self, address: str, username: Optional[str] = None) -> str:
        """Mint a token for a newly paired or joined device."""
        token = secrets.token_urlsafe(24)
        now = self._clock()
        record = UserRecord(
            user_id=token,
            username=username,
            address=address,
            avatar=DEFAULT_AVATAR if username else None,
            created_at=now,
            last_seen=now,
        )
        with self._lock:
            self._tokens[token] = record
            if username:
                self._users[token] = record
        return token

    def is_known_token(self, token: Optional[str]) -> bool:
        with self._lock:
            return bool(token) and token in self._tokens

    def identify(
        self, token: str, username: Optional[str], avatar: Optional[str], address: str
    ) -> UserRecord:
        """Lock in the display name for a token.

        Raises:
            KeyError: If the token was never issued.
        """
        with self._lock:
            record = self._tokens[token]
            record.username = (username or "").strip() or GUEST_NAME
            record.avatar = (avatar or "").strip() or DEFAULT_AVATAR
            record.address = address
            record.last_seen = self._clock()
            self._users[token] = record
            return record

    def resolve(
        self, token: Optional[str], username: Optional[str], address: str
    ) -> Identity:
        """Work out who is behind a request.

        A known token wins; otherwise an explicit username is upserted as an
        anonymous voter keyed by (name, address); otherwise the voter is Guest.
        """
        now = self._clock()
        explicit = (username or "").strip()

        with self._lock:
            record = self._tokens.get(token) if token else None
            if record is not None:
                record.last_seen = now
                if not record.username:
                    record.username = explicit or GUEST_NAME
                    record.avatar = record.avatar or DEFAULT_AVATAR
                self._users[token] = record
                return Identity(name=record.username, address=record.address or address)

            if explicit:
                for user in self._users.values():
                    if _normalize(user.username) == _normalize(explicit) and user.address == address:
                        user.last_seen = now
                        break
                else:
                    user_id = str(uuid.uuid4())
                    self._users[user_id] = UserRecord(
                        user_id=user_id,
                        username=explicit,
                        address=address,
                        avatar=DEFAULT_AVATAR,
                        created_at=now,
                        last_seen=now,
                    )
                return Identity(name=explicit, address=address)

        return Identity(name=GUEST_NAME, address=address)

    def names_at(self, address: str) -> list[str]:
        """Every display name seen from an address."""
        with self._lock:
            return [
                u.username
                for u in self._users.values()
                if u.username and u.address == address
            ]

    def users(self) -> list[UserRecord]:
        with self._lock:
            return list(self._users.values())
