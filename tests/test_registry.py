import threading

import pytest

from server.core.SubscriberRegistry import SubscriberRegistry
from shared.errors import NotFound, ProtocolViolation


class Conn:
    """Stand-in for a ConnectionLink; the registry never touches it."""


def test_identities_start_at_zero_and_increase():
    registry = SubscriberRegistry()
    assert [registry.subscribe(Conn()) for _ in range(3)] == [0, 1, 2]


def test_identities_unique_when_interleaved_with_unsubscribes():
    registry = SubscriberRegistry()
    issued = []
    for i in range(20):
        issued.append(registry.subscribe(Conn()))
        if i % 3 == 0:
            registry.unsubscribe(issued[-1])
    assert len(set(issued)) == len(issued)


def test_unsubscribe_keeps_other_identities_stable():
    registry = SubscriberRegistry()
    a, b, c = Conn(), Conn(), Conn()
    id_a = registry.subscribe(a)
    id_b = registry.subscribe(b)
    id_c = registry.subscribe(c)

    assert registry.unsubscribe(id_a) is a

    assert registry.get(id_b) is b
    assert registry.get(id_c) is c
    assert registry.identities() == [id_b, id_c]
    # A newcomer never takes over a released identity
    assert registry.subscribe(Conn()) == 3


def test_unsubscribe_unknown_identity_is_not_found_without_change():
    registry = SubscriberRegistry()
    a = Conn()
    registry.subscribe(a)

    with pytest.raises(NotFound) as info:
        registry.unsubscribe(41)

    assert info.value.connection_id == 41
    assert registry.snapshot() == [a]


def test_double_unsubscribe_is_not_found():
    registry = SubscriberRegistry()
    connection_id = registry.subscribe(Conn())
    registry.unsubscribe(connection_id)
    with pytest.raises(NotFound):
        registry.unsubscribe(connection_id)


def test_same_connection_cannot_subscribe_twice():
    registry = SubscriberRegistry()
    a = Conn()
    registry.subscribe(a)
    with pytest.raises(ProtocolViolation):
        registry.subscribe(a)
    assert len(registry) == 1


def test_snapshot_is_an_ordered_copy():
    registry = SubscriberRegistry()
    conns = [Conn() for _ in range(3)]
    for conn in conns:
        registry.subscribe(conn)

    snapshot = registry.snapshot()
    registry.unsubscribe(1)

    assert snapshot == conns
    assert registry.snapshot() == [conns[0], conns[2]]


def test_clear_drains_everything():
    registry = SubscriberRegistry()
    conns = [Conn(), Conn()]
    for conn in conns:
        registry.subscribe(conn)
    assert registry.clear() == conns
    assert len(registry) == 0
    assert 0 not in registry


def test_concurrent_subscribes_from_threads_get_distinct_identities():
    registry = SubscriberRegistry()
    issued = []
    issued_lock = threading.Lock()

    def worker():
        for _ in range(200):
            connection_id = registry.subscribe(Conn())
            with issued_lock:
                issued.append(connection_id)
            if connection_id % 2:
                registry.unsubscribe(connection_id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(issued) == 1600
    assert len(set(issued)) == 1600
    assert sorted(registry.identities()) == sorted(i for i in issued if i % 2 == 0)
