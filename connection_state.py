import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class PeerState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


# FAILED -> CONNECTING is only taken on an explicit connect request.
ALLOWED_TRANSITIONS: Dict[PeerState, Set[PeerState]] = {
    PeerState.DISCONNECTED: {PeerState.CONNECTING, PeerState.FAILED},
    PeerState.CONNECTING: {PeerState.CONNECTED, PeerState.FAILED},
    PeerState.CONNECTED: {PeerState.DISCONNECTED, PeerState.FAILED},
    PeerState.FAILED: {PeerState.CONNECTING, PeerState.DISCONNECTED},
}

StatusListener = Callable[[str, PeerState, PeerState], None]


class InvalidTransition(ValueError):
    def __init__(self, peer_id: str, current: PeerState, target: PeerState):
        super().__init__(f"{peer_id}: {current.value} -> {target.value} is not allowed")
        self.peer_id = peer_id
        self.current = current
        self.target = target


class ConnectionStateMachine:
    """
    Lifecycle of the link to one remote peer.

    Nothing recovers on its own: leaving FAILED or DISCONNECTED always takes
    a new connect request from the caller.
    """
    def __init__(self, peer_id: str, status_callback: Optional[Callable[[PeerState], None]] = None):
        self.peer_id = peer_id
        self.state = PeerState.DISCONNECTED
        self.status_callback = status_callback
        self.history: List[PeerState] = [self.state]
        self._listeners: List[StatusListener] = []

    def add_listener(self, listener: StatusListener):
        """
        :param listener: called as (peer_id, old_state, new_state) on every transition
        """
        self._listeners.append(listener)

    def can_transition(self, target: PeerState) -> bool:
        return target == self.state or target in ALLOWED_TRANSITIONS[self.state]

    def transition(self, target: PeerState) -> bool:
        """
        Moves to target. Returns False for a same-state no-op, True when the
        state changed. Raises InvalidTransition for an edge the lifecycle
        does not have.
        """
        if target == self.state:
            return False
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(self.peer_id, self.state, target)

        old = self.state
        self.state = target
        self.history.append(target)
        logger.debug(f"[{self.peer_id}] {old.value} -> {target.value}")

        if self.status_callback:
            try:
                self.status_callback(target)
            except Exception as e:
                logger.error(f"[{self.peer_id}] status callback failed: {e}")
        for listener in list(self._listeners):
            try:
                listener(self.peer_id, old, target)
            except Exception as e:
                logger.error(f"[{self.peer_id}] status listener failed: {e}")
        return True

    @property
    def is_connected(self) -> bool:
        return self.state == PeerState.CONNECTED

    def __repr__(self):
        return f"<ConnectionStateMachine {self.peer_id} ({self.state.value})>"
