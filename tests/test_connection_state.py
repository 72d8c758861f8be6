import sys
import os

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from connection_state import ConnectionStateMachine, InvalidTransition, PeerState


def test_starts_disconnected():
    machine = ConnectionStateMachine("p1")
    assert machine.state == PeerState.DISCONNECTED
    assert not machine.is_connected


def test_failed_peer_can_reconnect():
    machine = ConnectionStateMachine("p1")
    for target in (PeerState.CONNECTING, PeerState.FAILED, PeerState.CONNECTING, PeerState.CONNECTED):
        assert machine.transition(target)
    assert machine.history == [PeerState.DISCONNECTED, PeerState.CONNECTING, PeerState.FAILED,
                               PeerState.CONNECTING, PeerState.CONNECTED]
    assert machine.is_connected


def test_connected_cannot_jump_back_to_connecting():
    machine = ConnectionStateMachine("p1")
    machine.transition(PeerState.CONNECTING)
    machine.transition(PeerState.CONNECTED)
    with pytest.raises(InvalidTransition):
        machine.transition(PeerState.CONNECTING)
    assert machine.state == PeerState.CONNECTED


def test_disconnected_cannot_skip_to_connected():
    machine = ConnectionStateMachine("p1")
    assert not machine.can_transition(PeerState.CONNECTED)
    with pytest.raises(InvalidTransition):
        machine.transition(PeerState.CONNECTED)


def test_same_state_is_a_no_op():
    calls = []
    machine = ConnectionStateMachine("p1", status_callback=calls.append)
    assert machine.transition(PeerState.DISCONNECTED) is False
    assert calls == []


def test_every_transition_notifies():
    calls = []
    seen = []
    machine = ConnectionStateMachine("p1", status_callback=calls.append)
    machine.add_listener(lambda peer_id, old, new: seen.append((peer_id, old, new)))

    machine.transition(PeerState.CONNECTING)
    machine.transition(PeerState.CONNECTED)
    machine.transition(PeerState.DISCONNECTED)

    assert calls == [PeerState.CONNECTING, PeerState.CONNECTED, PeerState.DISCONNECTED]
    assert seen[1] == ("p1", PeerState.CONNECTING, PeerState.CONNECTED)


def test_failing_listener_does_not_block_transition():
    def boom(state):
        raise RuntimeError("ui gone")

    machine = ConnectionStateMachine("p1", status_callback=boom)
    assert machine.transition(PeerState.CONNECTING)
    assert machine.state == PeerState.CONNECTING
