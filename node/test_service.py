"""
Test program for the session coordinator.
"""
import logging
import calendar
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from common.errors import (
    CapacityError, CommandError, InsufficientNodesError, SessionNotFoundError
)
from node.metrics import PrometheusMetricsSink
from node.models import NodeStatus, SessionStatus, TunnelSession, VPNNode, utcnow
from node.multihop import MultiHopRouter
from node.service import ControlLoop, MultiHopSessionManager, SessionCoordinator
from node.storage import MemoryRepository
from node.wireguard import TunnelInterfaceManager

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('service_test')

T0 = datetime(2024, 1, 1, 12, 0, 0)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class Timer:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class FixedSampler:
    def cpu_percent(self):
        return 40.0

    def memory_percent(self):
        return 60.0


def dump_line(public_key, handshake=0, rx=0, tx=0):
    return "\t".join([public_key, "(none)", "(none)", "10.8.0.2/32",
                      str(handshake), str(rx), str(tx), "25"])


def dump(*peers):
    header = "\t".join(["server-private", "server-public", "51820", "off"])
    return "\n".join([header] + list(peers)) + "\n"


def make_coordinator(runner, repo=None, max_connections=10, subnet="10.8.0.1/24", **kwargs):
    repo = repo or MemoryRepository()
    node = VPNNode(name="zurich-1", country="Switzerland", country_code="CH", city="Zurich",
                   public_ip="203.0.113.10", max_connections=max_connections)
    repo.save_node(node)
    kwargs.setdefault("clock", Clock())
    coordinator = SessionCoordinator(node.id, repo, TunnelInterfaceManager("wg0", runner),
                                     subnet=subnet, manage_interface=False,
                                     host_sampler=FixedSampler(), **kwargs)
    return coordinator, repo


class TestSessionLifecycle:
    def test_create_session(self, runner):
        metrics = PrometheusMetricsSink()
        coordinator, repo = make_coordinator(runner, metrics=metrics)

        session = coordinator.create_session("user-1")

        assert session.status == SessionStatus.ACTIVE
        assert session.tunnel_address == "10.8.0.2"
        assert session.connected_at == T0
        assert repo.get_session(session.id).status == SessionStatus.ACTIVE
        assert repo.get_node(coordinator.node_id).current_connections == 1
        assert (f"wg set wg0 peer {session.peer_public_key} allowed-ips 10.8.0.2/32 "
                "persistent-keepalive 25") in runner.commands
        labels = {"protocol": "wireguard", "node": coordinator.node_id}
        assert metrics.get_value("relay_active_connections", labels) == 1
        assert metrics.get_value("relay_connections_total", dict(labels, status="success")) == 1

    def test_addresses_are_not_reused_while_active(self, runner):
        coordinator, _ = make_coordinator(runner)

        first = coordinator.create_session("user-1")
        second = coordinator.create_session("user-2")
        coordinator.disconnect_session(first.id)
        third = coordinator.create_session("user-3")

        assert second.tunnel_address == "10.8.0.3"
        assert third.tunnel_address == "10.8.0.2"

    def test_capacity_error_creates_no_record(self, runner):
        metrics = PrometheusMetricsSink()
        coordinator, repo = make_coordinator(runner, max_connections=1, metrics=metrics)
        coordinator.create_session("user-1")
        runner.clear()

        with pytest.raises(CapacityError):
            coordinator.create_session("user-2")

        assert len(repo.list_sessions()) == 1
        assert runner.calls == []
        labels = {"protocol": "wireguard", "node": coordinator.node_id, "status": "rejected"}
        assert metrics.get_value("relay_connections_total", labels) == 1

    def test_peer_failure_rolls_back_record(self, runner):
        coordinator, repo = make_coordinator(runner)
        runner.fail_on("allowed-ips")

        with pytest.raises(CommandError):
            coordinator.create_session("user-1")

        assert repo.list_sessions() == []
        assert coordinator.active_count() == 0
        assert repo.get_node(coordinator.node_id).current_connections == 0

    def test_concurrent_allocations_are_unique(self, runner):
        coordinator, repo = make_coordinator(runner, max_connections=2000, subnet="10.8.0.1/22")

        with ThreadPoolExecutor(max_workers=32) as pool:
            sessions = list(pool.map(lambda i: coordinator.create_session(f"user-{i}"), range(1000)))

        addresses = [session.tunnel_address for session in sessions]
        assert len(set(addresses)) == 1000
        assert "10.8.0.1" not in addresses
        assert repo.get_node(coordinator.node_id).current_connections == 1000

    def test_disconnect(self, runner):
        coordinator, repo = make_coordinator(runner)
        session = coordinator.create_session("user-1")
        coordinator.clock.now = T0 + timedelta(minutes=5)

        coordinator.disconnect_session(session.id)

        record = repo.get_session(session.id)
        assert record.status == SessionStatus.DISCONNECTED
        assert record.disconnected_at == T0 + timedelta(minutes=5)
        assert f"wg set wg0 peer {session.peer_public_key} remove" in runner.commands
        assert repo.get_node(coordinator.node_id).current_connections == 0

    def test_second_disconnect_is_not_found(self, runner):
        coordinator, _ = make_coordinator(runner)
        session = coordinator.create_session("user-1")
        coordinator.disconnect_session(session.id)

        with pytest.raises(SessionNotFoundError):
            coordinator.disconnect_session(session.id)

    def test_disconnect_survives_peer_removal_failure(self, runner):
        coordinator, repo = make_coordinator(runner)
        session = coordinator.create_session("user-1")
        runner.fail_on("remove")

        coordinator.disconnect_session(session.id)

        assert repo.get_session(session.id).status == SessionStatus.DISCONNECTED
        assert coordinator.active_count() == 0

    def test_connected_users(self, runner):
        coordinator, _ = make_coordinator(runner)
        coordinator.create_session("bob")
        coordinator.create_session("alice")
        coordinator.create_session("bob")

        assert coordinator.get_connected_users() == ["alice", "bob"]

    def test_client_config(self, runner):
        coordinator, repo = make_coordinator(runner)
        repo.update_node(coordinator.node_id, public_key="server-public-key")
        session = coordinator.create_session("user-1")

        config = coordinator.client_config(session.id)

        assert f"PrivateKey = {session.private_key}" in config
        assert "Address = 10.8.0.2/32" in config
        assert "PublicKey = server-public-key" in config
        assert "Endpoint = 203.0.113.10:51820" in config


class TestControlLoops:
    def test_monitor_disconnects_idle_sessions(self, runner):
        coordinator, repo = make_coordinator(runner)
        session = coordinator.create_session("user-1")
        coordinator.clock.now = T0 + timedelta(minutes=11)

        coordinator.monitor_sessions()

        assert coordinator.active_count() == 0
        assert repo.get_session(session.id).status == SessionStatus.DISCONNECTED

    def test_monitor_keeps_sessions_with_recent_handshake(self, runner):
        coordinator, repo = make_coordinator(runner)
        session = coordinator.create_session("user-1")
        handshake = T0 + timedelta(minutes=10)
        runner.set_output("wg show wg0 dump", dump(
            dump_line(session.peer_public_key, calendar.timegm(handshake.timetuple()), 500, 700)
        ))
        coordinator.clock.now = T0 + timedelta(minutes=11)

        coordinator.monitor_sessions()

        assert coordinator.active_count() == 1
        record = repo.get_session(session.id)
        assert record.last_keepalive == handshake
        assert record.bytes_received == 500
        assert record.bytes_sent == 700

    def test_handshake_refresh_waits_for_session_writers(self, runner):
        coordinator, repo = make_coordinator(runner)
        session = coordinator.create_session("user-1")
        handshake = T0 + timedelta(minutes=5)
        runner.set_output("wg show wg0 dump", dump(
            dump_line(session.peer_public_key, calendar.timegm(handshake.timetuple()), 10, 20)
        ))

        coordinator._session_lock.acquire_write()
        refresher = threading.Thread(target=coordinator._refresh_from_handshakes)
        refresher.start()
        refresher.join(0.2)
        assert refresher.is_alive()
        assert session.bytes_received == 0
        coordinator._session_lock.release_write()
        refresher.join(5)

        assert not refresher.is_alive()
        assert session.last_keepalive == handshake
        assert repo.get_session(session.id).bytes_sent == 20

    def test_record_keepalive(self, runner):
        coordinator, repo = make_coordinator(runner)
        session = coordinator.create_session("user-1")

        coordinator.record_keepalive(session.id, T0 + timedelta(minutes=9))
        coordinator.clock.now = T0 + timedelta(minutes=11)
        coordinator.monitor_sessions()

        assert coordinator.active_count() == 1
        with pytest.raises(SessionNotFoundError):
            coordinator.record_keepalive("missing")

    def test_heartbeat_updates_node(self, runner):
        coordinator, repo = make_coordinator(runner)
        runner.set_output("wg show wg0 peers", "key-a\nkey-b\n")

        coordinator.send_heartbeat()

        node = repo.get_node(coordinator.node_id)
        assert node.status == NodeStatus.ONLINE
        assert node.last_heartbeat == T0
        assert node.current_connections == 2

    def test_collect_metrics(self, runner):
        metrics = PrometheusMetricsSink()
        coordinator, repo = make_coordinator(runner, metrics=metrics)

        coordinator.collect_metrics()

        node = repo.get_node(coordinator.node_id)
        assert node.cpu_usage == 40.0
        assert node.memory_usage == 60.0
        assert node.load_score == pytest.approx(40.0 * 0.3 + 60.0 * 0.3)
        assert metrics.get_value("relay_node_cpu_usage", {"node": coordinator.node_id}) == 40.0

    def test_traffic_rate(self, runner):
        timer = Timer()
        coordinator, repo = make_coordinator(runner, timer=timer)
        runner.set_output("wg show wg0 dump", dump(dump_line("key-a", 0, 1000, 1000)))
        coordinator.sample_traffic()
        assert coordinator.get_current_traffic_mbps() == 0.0

        runner.set_output("wg show wg0 dump", dump(dump_line("key-a", 0, 126000, 126000)))
        timer.now += 2.0
        coordinator.sample_traffic()

        # 250000 bytes over 2 seconds
        assert coordinator.get_current_traffic_mbps() == pytest.approx(1.0)
        assert repo.get_node(coordinator.node_id).bandwidth_usage_gbps == pytest.approx(0.001)

    def test_traffic_counter_reset_is_not_negative(self, runner):
        timer = Timer()
        coordinator, _ = make_coordinator(runner, timer=timer)
        runner.set_output("wg show wg0 dump", dump(dump_line("key-a", 0, 9000, 9000)))
        coordinator.sample_traffic()

        runner.set_output("wg show wg0 dump", dump())
        timer.now += 1.0
        coordinator.sample_traffic()

        assert coordinator.get_current_traffic_mbps() == 0.0

    def test_start_and_stop(self, runner):
        coordinator, repo = make_coordinator(runner, intervals={
            "heartbeat": 60, "monitor": 60, "metrics": 60, "traffic": 60,
        })
        coordinator.start()
        node = repo.get_node(coordinator.node_id)
        assert node.private_key and node.public_key
        assert node.status == NodeStatus.ONLINE
        session = coordinator.create_session("user-1")

        coordinator.stop()

        assert repo.get_session(session.id).status == SessionStatus.DISCONNECTED
        node = repo.get_node(coordinator.node_id)
        assert node.status == NodeStatus.OFFLINE
        assert node.current_connections == 0
        assert not coordinator.running

    def test_start_restores_active_sessions(self, runner):
        coordinator, repo = make_coordinator(runner, intervals={
            "heartbeat": 60, "monitor": 60, "metrics": 60, "traffic": 60,
        })
        persisted = repo.create_session(TunnelSession(
            user_id="user-1", node_id=coordinator.node_id, tunnel_address="10.8.0.2",
            peer_public_key="restored-key", status=SessionStatus.ACTIVE, last_keepalive=T0,
        ))

        coordinator.start()
        try:
            assert coordinator.get_session(persisted.id).peer_public_key == "restored-key"
            assert coordinator.create_session("user-2").tunnel_address == "10.8.0.3"
        finally:
            coordinator.stop()

    def test_control_loop_survives_tick_errors(self):
        stop = threading.Event()
        calls = []

        def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            if len(calls) >= 3:
                stop.set()

        loop = ControlLoop("test", 0.01, tick, stop)
        loop.start()
        loop.join(timeout=5)

        assert not loop.is_alive()
        assert len(calls) == 3


class TestMultiHopSessions:
    def setup_method(self):
        self.repo = MemoryRepository()
        self.coordinators = {}
        for name, country, code, city in [("geneva-1", "Switzerland", "CH", "Geneva"),
                                          ("reykjavik-1", "Iceland", "IS", "Reykjavik")]:
            node = VPNNode(name=name, country=country, country_code=code, city=city,
                           status=NodeStatus.ONLINE, supports_multihop=True,
                           last_heartbeat=utcnow())
            self.repo.save_node(node)
        self.router = MultiHopRouter(self.repo)

    def add_coordinators(self, runners):
        for node, node_runner in zip(self.repo.list_nodes(), runners):
            self.coordinators[node.id] = SessionCoordinator(
                node.id, self.repo, TunnelInterfaceManager("wg0", node_runner),
                manage_interface=False)

    def test_session_per_hop(self, runner):
        self.add_coordinators([runner, runner])
        manager = MultiHopSessionManager(self.router, self.coordinators)

        chain, sessions = manager.create_session("user-1", ["CH", "IS"])

        assert [s.node_id for s in sessions] == [chain.entry_node.id, chain.exit_node.id]
        assert sessions[0].next_hop_node_id == chain.exit_node.id
        assert sessions[1].next_hop_node_id is None
        assert all(s.is_multihop for s in sessions)

    def test_failed_hop_rolls_back_earlier_hops(self, runner):
        entry_runner, exit_runner = runner, type(runner)()
        exit_runner.fail_on("allowed-ips")
        nodes = self.repo.list_nodes()
        ordered = {node.country_code: node for node in nodes}
        self.coordinators[ordered["CH"].id] = SessionCoordinator(
            ordered["CH"].id, self.repo, TunnelInterfaceManager("wg0", entry_runner),
            manage_interface=False)
        self.coordinators[ordered["IS"].id] = SessionCoordinator(
            ordered["IS"].id, self.repo, TunnelInterfaceManager("wg0", exit_runner),
            manage_interface=False)
        manager = MultiHopSessionManager(self.router, self.coordinators)

        with pytest.raises(CommandError):
            manager.create_session("user-1", ["CH", "IS"])

        entry = self.coordinators[ordered["CH"].id]
        assert entry.active_count() == 0
        assert any(cmd.endswith("remove") for cmd in entry_runner.commands)
        assert all(s.status == SessionStatus.DISCONNECTED for s in self.repo.list_sessions())

    def test_missing_country_creates_nothing(self, runner):
        self.add_coordinators([runner, runner])
        manager = MultiHopSessionManager(self.router, self.coordinators)

        with pytest.raises(InsufficientNodesError):
            manager.create_session("user-1", ["CH", "JP"])
        assert self.repo.list_sessions() == []
