"""
Test program for the node repositories.
Runs the same checks against the in-memory store and an in-memory SQLite database.
"""
import logging
from datetime import timedelta

import pytest

from common.errors import NodeNotFoundError, SessionNotFoundError
from node.models import NodeStatus, SessionStatus, TunnelSession, VPNNode, utcnow
from node.storage import MemoryRepository, SQLRepository

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('storage_test')


@pytest.fixture(params=["memory", "sql"])
def repository(request):
    if request.param == "memory":
        yield MemoryRepository()
    else:
        repo = SQLRepository("sqlite://")
        yield repo
        repo.close()


def make_node(**overrides):
    values = dict(name="zurich-1", country="Switzerland", country_code="CH",
                  city="Zurich", status=NodeStatus.ONLINE, last_heartbeat=utcnow())
    values.update(overrides)
    return VPNNode(**values)


def test_node_round_trip(repository):
    node = make_node(public_key="pk", max_connections=50)
    repository.save_node(node)

    loaded = repository.get_node(node.id)
    assert loaded.name == "zurich-1"
    assert loaded.max_connections == 50
    assert loaded.public_key == "pk"


def test_unknown_node_raises(repository):
    with pytest.raises(NodeNotFoundError):
        repository.get_node("missing")
    with pytest.raises(NodeNotFoundError):
        repository.update_node("missing", cpu_usage=1.0)


def test_list_nodes_filters(repository):
    repository.save_node(make_node(name="a"))
    repository.save_node(make_node(name="b", status=NodeStatus.OFFLINE))
    repository.save_node(make_node(name="c", supports_multihop=False))

    names = {node.name for node in repository.list_nodes(status=NodeStatus.ONLINE,
                                                          supports_multihop=True)}
    assert names == {"a"}


def test_update_node_fields(repository):
    node = make_node()
    repository.save_node(node)

    updated = repository.update_node(node.id, cpu_usage=42.5, status=NodeStatus.MAINTENANCE)
    assert updated.cpu_usage == 42.5
    assert repository.get_node(node.id).status == NodeStatus.MAINTENANCE


def test_connection_counter_never_goes_negative(repository):
    node = make_node(current_connections=1)
    repository.save_node(node)

    assert repository.adjust_node_connections(node.id, 2) == 3
    assert repository.adjust_node_connections(node.id, -5) == 0
    assert repository.get_node(node.id).current_connections == 0


def test_session_crud_and_filters(repository):
    first = TunnelSession(user_id="u1", node_id="n1", status=SessionStatus.ACTIVE,
                          tunnel_address="10.8.0.2", connected_at=utcnow())
    second = TunnelSession(user_id="u2", node_id="n1", status=SessionStatus.DISCONNECTED)
    third = TunnelSession(user_id="u1", node_id="n2", status=SessionStatus.ACTIVE)
    for session in (first, second, third):
        repository.create_session(session)

    active_on_n1 = repository.list_sessions(node_id="n1", status=SessionStatus.ACTIVE)
    assert [s.id for s in active_on_n1] == [first.id]
    assert {s.id for s in repository.list_sessions(user_id="u1")} == {first.id, third.id}

    when = utcnow() + timedelta(seconds=5)
    repository.update_session(first.id, last_keepalive=when)
    assert repository.get_session(first.id).last_keepalive == when

    repository.delete_session(second.id)
    with pytest.raises(SessionNotFoundError):
        repository.get_session(second.id)
    with pytest.raises(SessionNotFoundError):
        repository.delete_session(second.id)


def test_returned_records_are_copies(repository):
    node = make_node()
    repository.save_node(node)

    loaded = repository.get_node(node.id)
    loaded.cpu_usage = 99.0
    assert repository.get_node(node.id).cpu_usage == 0.0


def test_update_rejects_unknown_field(repository):
    session = TunnelSession(user_id="u1", node_id="n1")
    repository.create_session(session)

    with pytest.raises(AttributeError):
        repository.update_session(session.id, colour="blue")
