"""Per-voter vote eligibility policies.

Each policy answers "may this voter vote for this track now?" and records
accepted votes. The :class:`EligibilityGate` keeps one instance of every
policy so switching modes never loses the records of the others, and owns the
current Round.
"""

import logging
from abc import ABC, abstractmethod
from typing import Hashable

from .config import EligibilityScope, VotePolicy, VotingSettings
from .models import Identity

logger = logging.getLogger(__name__)

VoterKey = Hashable


class EligibilityPolicy(ABC):
    """Base class for eligibility modes."""

    @property
    @abstractmethod
    def mode(self) -> VotePolicy:
        pass

    @abstractmethod
    def check(
        self, voter: VoterKey, track_id: str, round_id: int, now: float
    ) -> tuple[bool, str]:
        """Decide whether the voter may vote.

        Returns:
            Tuple of (allowed, reason when denied).
        """
        pass

    @abstractmethod
    def record(self, voter: VoterKey, track_id: str, round_id: int, now: float) -> None:
        """Remember an accepted vote."""
        pass

    def forget_track(self, track_id: str) -> None:
        """Drop records tied to a track whose votes were cleared."""

    def start_round(self, round_id: int) -> None:
        """Drop records scoped to the previous round."""


class PerTrackPolicy(EligibilityPolicy):
    """One vote per voter per track, until that track's votes are cleared."""

    def __init__(self):
        self._voted: dict[VoterKey, set[str]] = {}

    @property
    def mode(self) -> VotePolicy:
        return VotePolicy.PER_TRACK

    def check(self, voter, track_id, round_id, now):
        if track_id in self._voted.get(voter, ()):
            return False, "already voted this track"
        return True, ""

    def record(self, voter, track_id, round_id, now):
        self._voted.setdefault(voter, set()).add(track_id)

    def forget_track(self, track_id: str) -> None:
        for voter in list(self._voted):
            tracks = self._voted[voter]
            tracks.discard(track_id)
            if not tracks:
                del self._voted[voter]


class PerRoundPolicy(EligibilityPolicy):
    """One vote per voter per Round."""

    def __init__(self):
        self._last_round: dict[VoterKey, int] = {}

    @property
    def mode(self) -> VotePolicy:
        return VotePolicy.PER_ROUND

    def check(self, voter, track_id, round_id, now):
        if self._last_round.get(voter) == round_id:
            return False, "already voted this round"
        return True, ""

    def record(self, voter, track_id, round_id, now):
        self._last_round[voter] = round_id

    def start_round(self, round_id: int) -> None:
        self._last_round.clear()


class TtlPolicy(EligibilityPolicy):
    """One vote per voter per track per time window."""

    def __init__(self, ttl_seconds: int = 900):
        self.ttl_seconds = ttl_seconds
        self._expires: dict[tuple[VoterKey, str], float] = {}

    @property
    def mode(self) -> VotePolicy:
        return VotePolicy.TTL

    def check(self, voter, track_id, round_id, now):
        if now < self._expires.get((voter, track_id), 0.0):
            return False, "ttl not expired"
        return True, ""

    def record(self, voter, track_id, round_id, now):
        self._expires[(voter, track_id)] = now + max(1, self.ttl_seconds)
        # Expired windows are dead weight
        for key in [k for k, exp in self._expires.items() if exp <= now]:
            del self._expires[key]


class EligibilityGate:
    """Selects the active policy and tracks the current Round."""

    def __init__(self, settings: VotingSettings):
        self._ttl = TtlPolicy(settings.vote_ttl_seconds)
        self._policies: dict[VotePolicy, EligibilityPolicy] = {
            VotePolicy.PER_TRACK: PerTrackPolicy(),
            VotePolicy.PER_ROUND: PerRoundPolicy(),
            VotePolicy.TTL: self._ttl,
        }
        self._mode = settings.vote_policy
        self._scope = settings.eligibility_scope
        self._round_id = 1

    @property
    def mode(self) -> VotePolicy:
        return self._mode

    @property
    def current_round(self) -> int:
        return self._round_id

    @property
    def policy(self) -> EligibilityPolicy:
        return self._policies[self._mode]

    def voter_key(self, identity: Identity) -> VoterKey:
        if self._scope == EligibilityScope.ADDRESS:
            return identity.address
        return (identity.normalized_name, identity.address)

    def configure(self, settings: VotingSettings) -> None:
        """Apply changed settings; entering perRound starts a fresh Round."""
        self._ttl.ttl_seconds = settings.vote_ttl_seconds
        self._scope = settings.eligibility_scope

        previous = self._mode
        self._mode = settings.vote_policy
        if previous != self._mode:
            logger.info(f"Vote policy changed: {previous.value} → {self._mode.value}")
            if self._mode == VotePolicy.PER_ROUND:
                self.advance_round()

    def advance_round(self) -> int:
        """Start a new Round and drop round-scoped records."""
        self._round_id += 1
        for policy in self._policies.values():
            policy.start_round(self._round_id)
        logger.debug(f"Round {self._round_id} started")
        return self._round_id

    def check(self, identity: Identity, track_id: str, now: float) -> tuple[bool, str]:
        return self.policy.check(
            self.voter_key(identity), track_id, self._round_id, now
        )

    def record(self, identity: Identity, track_id: str, now: float) -> None:
        self.policy.record(self.voter_key(identity), track_id, self._round_id, now)

    def forget_track(self, track_id: str) -> None:
        for policy in self._policies.values():
            policy.forget_track(track_id)
