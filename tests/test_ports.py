"""
Tests for port reservation and the session registry.

Covers:
- OS-level bindability probe
- Reserve-then-verify allocation (skip reserved, skip unbindable, exhaustion)
- Port ownership on pop/release
- Concurrent reservations never share a port
"""

import os
import socket
import sys
import threading
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_manager.errors import ResourceExhausted
from agent_manager.ports import SessionRegistry, is_port_bindable


def always_free(port):
    return True


def fake_session(session_id, port):
    return SimpleNamespace(session_id=session_id, port=port)


class TestIsPortBindable:

    def test_free_port_is_bindable(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        assert is_port_bindable(port)

    def test_listening_port_is_not_bindable(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            port = sock.getsockname()[1]
            assert not is_port_bindable(port)


class TestSessionRegistry:

    def test_rejects_empty_range(self):
        with pytest.raises(ValueError):
            SessionRegistry(7681, 0)

    def test_ports_cover_range(self):
        registry = SessionRegistry(7681, 20)
        assert registry.ports[0] == 7681
        assert registry.ports[-1] == 7700
        assert len(registry.ports) == 20

    def test_reserves_lowest_free_port_first(self):
        registry = SessionRegistry(9000, 3)
        assert registry.reserve_port(always_free) == 9000
        assert registry.reserve_port(always_free) == 9001
        assert registry.reserved_ports() == {9000, 9001}

    def test_skips_ports_that_fail_probe(self):
        registry = SessionRegistry(9000, 3)
        port = registry.reserve_port(lambda p: p != 9000)
        assert port == 9001

    def test_exhausted_range_raises(self):
        registry = SessionRegistry(9000, 2)
        registry.reserve_port(always_free)
        registry.reserve_port(always_free)

        with pytest.raises(ResourceExhausted) as exc_info:
            registry.reserve_port(always_free)
        assert exc_info.value.base_port == 9000
        assert exc_info.value.port_range == 2
        assert exc_info.value.kind == "resource_exhausted"

    def test_unbindable_range_raises(self):
        registry = SessionRegistry(9000, 2)
        with pytest.raises(ResourceExhausted):
            registry.reserve_port(lambda p: False)
        assert registry.reserved_ports() == set()

    def test_released_port_can_be_reserved_again(self):
        registry = SessionRegistry(9000, 1)
        port = registry.reserve_port(always_free)
        registry.release_port(port)
        assert registry.reserve_port(always_free) == port

    def test_add_requires_reserved_port(self):
        registry = SessionRegistry(9000, 2)
        with pytest.raises(RuntimeError):
            registry.add(fake_session("session-a", 9000))

    def test_add_get_and_contains(self):
        registry = SessionRegistry(9000, 2)
        port = registry.reserve_port(always_free)
        session = fake_session("session-a", port)
        registry.add(session)

        assert "session-a" in registry
        assert registry.get("session-a") is session
        assert len(registry) == 1
        assert registry.sessions() == [session]

    def test_pop_releases_port_by_default(self):
        registry = SessionRegistry(9000, 2)
        port = registry.reserve_port(always_free)
        registry.add(fake_session("session-a", port))

        assert registry.pop("session-a") is not None
        assert port not in registry.reserved_ports()
        assert "session-a" not in registry

    def test_pop_without_release_keeps_reservation(self):
        registry = SessionRegistry(9000, 2)
        port = registry.reserve_port(always_free)
        registry.add(fake_session("session-a", port))

        registry.pop("session-a", release=False)
        assert port in registry.reserved_ports()

        # The caller that popped it releases once the process is gone
        registry.release_port(port)
        assert port not in registry.reserved_ports()

    def test_pop_unknown_session_returns_none(self):
        registry = SessionRegistry(9000, 2)
        assert registry.pop("missing") is None

    def test_concurrent_reservations_get_distinct_ports(self):
        registry = SessionRegistry(9000, 20)
        results = []
        errors = []
        barrier = threading.Barrier(20)

        def reserve():
            barrier.wait()
            try:
                results.append(registry.reserve_port(always_free))
            except ResourceExhausted as e:
                errors.append(e)

        threads = [threading.Thread(target=reserve) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(results) == 20
        assert len(set(results)) == 20
        assert set(results) == set(registry.ports)
