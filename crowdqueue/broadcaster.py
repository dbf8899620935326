"""Fan-out of state and progress updates to connected viewers.

One transport carries two message variants: ``state`` (full snapshot, sent
after every mutation) and ``progress`` (progress only, sent every second).
Sharing the transport keeps their relative order per client.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from .models import ProgressRecord, StateSnapshot

logger = logging.getLogger(__name__)

STATE_EVENT = "state"
PROGRESS_EVENT = "progress"


class Transport(ABC):
    """Publish/subscribe channel to every connected viewer."""

    @abstractmethod
    def emit(self, event: str, payload: dict[str, Any]) -> None:
        pass


class SocketIOTransport(Transport):
    """Broadcasts through a Flask-SocketIO server."""

    def __init__(self, socketio):
        self.socketio = socketio

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.socketio.emit(event, payload)


class StateBroadcaster:
    """Serializes snapshots and pushes them to the transport."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.state_count = 0
        self.progress_count = 0

    def publish_state(self, snapshot: StateSnapshot) -> None:
        self.state_count += 1
        self._emit(STATE_EVENT, snapshot.to_dict())

    def publish_progress(self, progress: ProgressRecord) -> None:
        self.progress_count += 1
        self._emit(PROGRESS_EVENT, progress.to_dict())

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        try:
            self.transport.emit(event, payload)
        except Exception as e:
            # Viewers resync on the next push; the mutation itself stands
            logger.error(f"Failed to broadcast {event}: {e}")
