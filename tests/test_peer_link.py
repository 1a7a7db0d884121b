"""Role resolution and the per-peer state machine."""
import itertools

import pytest

from meshrooms.client.peer_link import InvalidTransition, PeerLink, PeerState, Role, resolve_role
from meshrooms.client.session import generate_id


def test_smaller_id_offers():
    assert resolve_role("a1b2c3", "z9y8x7") is Role.OFFERER
    assert resolve_role("z9y8x7", "a1b2c3") is Role.ANSWERER


def test_exactly_one_offerer_per_pair():
    ids = [generate_id() for _ in range(20)]
    for local, remote in itertools.permutations(set(ids), 2):
        roles = {resolve_role(local, remote), resolve_role(remote, local)}
        assert roles == {Role.OFFERER, Role.ANSWERER}


def test_same_id_is_rejected():
    with pytest.raises(ValueError):
        resolve_role("abc", "abc")


def test_answerer_is_polite():
    assert PeerLink(user_id="b", role=Role.ANSWERER).polite
    assert not PeerLink(user_id="b", role=Role.OFFERER).polite


def test_happy_path_transitions():
    link = PeerLink(user_id="b", role=Role.OFFERER)
    assert link.state is PeerState.IDLE

    assert link.transition(PeerState.NEGOTIATING)
    assert link.transition(PeerState.CONNECTED)
    assert link.connected_event.is_set()

    assert link.transition(PeerState.RECONNECTING)
    assert not link.connected_event.is_set()
    assert link.transition(PeerState.CONNECTED)
    assert link.transition(PeerState.CLOSED)


def test_repeated_state_is_a_noop():
    link = PeerLink(user_id="b", role=Role.OFFERER)
    link.transition(PeerState.NEGOTIATING)
    assert link.transition(PeerState.NEGOTIATING) is False
    assert link.can_transition(PeerState.NEGOTIATING)


@pytest.mark.parametrize(
    "path, illegal",
    [
        ([], PeerState.CONNECTED),
        ([PeerState.NEGOTIATING, PeerState.CONNECTED], PeerState.NEGOTIATING),
        ([PeerState.CLOSED], PeerState.NEGOTIATING),
        ([PeerState.CLOSED], PeerState.CONNECTED),
    ],
)
def test_illegal_transitions(path, illegal):
    link = PeerLink(user_id="b", role=Role.ANSWERER)
    for state in path:
        link.transition(state)

    assert not link.can_transition(illegal)
    with pytest.raises(InvalidTransition):
        link.transition(illegal)


def test_reset_transport_drops_queued_candidates():
    link = PeerLink(user_id="b", role=Role.OFFERER)
    link.pending_candidates.append({"candidate": "x"})
    link.remote_description_set = True
    link.remote_tracks.append(object())

    link.reset_transport(object())

    assert not link.pending_candidates
    assert not link.remote_description_set
    assert link.remote_tracks == []
