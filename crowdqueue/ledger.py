"""Vote ledger: aggregated votes per candidate track."""

import logging
from typing import Callable, Optional

from .eligibility import EligibilityGate
from .moderation import ModerationFilter
from .models import Identity, RejectReason, Track, VoteEntry, VoteOutcome

logger = logging.getLogger(__name__)


class VoteLedger:
    """Counts votes and decides the crowd's current favourite.

    Not thread-safe; the engine serializes every call.
    """

    def __init__(
        self,
        eligibility: EligibilityGate,
        moderation: ModerationFilter,
        aliases: Optional[Callable[[str], list[str]]] = None,
    ):
        """Initialize the ledger.

        Args:
            eligibility: Rate-limiting gate consulted on every vote.
            moderation: Ban rules consulted on every vote.
            aliases: Returns other names seen from an address, for bans
                that follow the address; None disables that lookup.
        """
        self.eligibility = eligibility
        self.moderation = moderation
        self._aliases = aliases
        self._entries: dict[str, VoteEntry] = {}
        self._sequence = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, track_id: str) -> bool:
        return track_id in self._entries

    def entry(self, track_id: str) -> Optional[VoteEntry]:
        return self._entries.get(track_id)

    def cast_vote(self, identity: Identity, track: Track, now: float) -> VoteOutcome:
        """Count one vote if moderation and eligibility allow it.

        Args:
            identity: Who is voting.
            track: The track voted for, as just fetched from the provider.
            now: Monotonic time in seconds.

        Returns:
            VoteOutcome; on acceptance ``count`` is the track's new total.
        """
        aliases = self._aliases(identity.address) if self._aliases else ()
        if self.moderation.is_identity_banned(identity.name, identity.address, aliases):
            logger.info(f"Rejected vote from banned user {identity.name} ({identity.address})")
            return VoteOutcome.rejected(RejectReason.BANNED, "user banned")

        banned, rule = self.moderation.check_track(track)
        if banned:
            logger.info(f"Rejected vote for banned track {track.name}: {rule}")
            return VoteOutcome.rejected(RejectReason.BANNED, "track banned")

        allowed, detail = self.eligibility.check(identity, track.id, now)
        if not allowed:
            logger.debug(f"Rejected vote from {identity.name} for {track.id}: {detail}")
            return VoteOutcome.rejected(RejectReason.ALREADY_VOTED, detail)

        self._sequence += 1
        entry = self._entries.get(track.id)
        if entry is None:
            entry = VoteEntry(track=track)
            self._entries[track.id] = entry
        entry.track = track
        entry.count += 1
        entry.reached_at = self._sequence
        self.eligibility.record(identity, track.id, now)

        logger.info(f"🗳️  {identity.name} voted for {track.name} ({entry.count})")
        return VoteOutcome(accepted=True, count=entry.count)

    def leaderboard(self) -> list[VoteEntry]:
        """Entries with votes, most votes first.

        Ties go to the entry that reached the shared count first.
        """
        live = [e for e in self._entries.values() if e.count > 0]
        return sorted(live, key=lambda e: (-e.count, e.reached_at))

    def resolve_winner(self, min_votes: int) -> Optional[VoteEntry]:
        """The leader, if it has at least ``min_votes`` votes."""
        board = self.leaderboard()
        if board and board[0].count >= min_votes:
            return board[0]
        return None

    def clear_track(self, track_id: str) -> bool:
        """Drop a track's votes so a fresh round of voting starts for it.

        Returns:
            True if the track had an entry.
        """
        self.eligibility.forget_track(track_id)
        return self._entries.pop(track_id, None) is not None

    def purge_banned(self, predicate: Callable[[Track], bool]) -> list[str]:
        """Remove every entry whose track matches ``predicate``.

        Returns:
            Ids of the removed tracks.
        """
        purged = [tid for tid, e in self._entries.items() if predicate(e.track)]
        for track_id in purged:
            self.clear_track(track_id)
        if purged:
            logger.info(f"Purged votes for {len(purged)} banned track(s)")
        return purged
