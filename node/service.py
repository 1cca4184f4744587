"""
Session coordination for the relay node.
Owns the tunnel session lifecycle and runs the node's background control loops.
"""
import time
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, List, Optional, Tuple

import psutil

from common.crypto.keys import generate_keypair
from common.errors import (
    CapacityError, CommandError, NodeNotFoundError, PeerNotFoundError,
    RelayNodeError, SessionNotFoundError
)
from common.networking.obfuscation import ObfuscationLayer
from common.utils.locks import ReadWriteLock
from node.metrics import MetricsSink, NullMetricsSink
from node.models import (
    HopChain, NodeStatus, PeerConfig, ServerConfig, SessionStatus,
    TunnelSession, utcnow
)
from node.multihop import MultiHopRouter
from node.storage import Repository
from node.wireguard import (
    TunnelInterfaceManager, allocate_client_ip, generate_client_config
)

logger = logging.getLogger("service")

DEFAULT_INTERVALS = {
    "heartbeat": 30.0,
    "monitor": 60.0,
    "metrics": 15.0,
    "traffic": 1.0,
}


class ControlLoop(threading.Thread):
    """
    Long-running background task with its own ticker.

    Every loop of a coordinator shares one stop event; the loop exits at its
    next tick once the event is set. Errors in a tick are logged and the loop
    keeps running.
    """

    def __init__(self, name: str, interval: float, tick: Callable[[], None],
                 stop_event: threading.Event):
        super().__init__(name=name)
        self.daemon = True
        self.interval = interval
        self.tick = tick
        self.stop_event = stop_event
        self.ticks = 0

    def run(self) -> None:
        logger.info(f"{self.name} loop started (interval {self.interval}s)")
        while not self.stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"{self.name} loop tick failed: {e}", exc_info=True)
            self.ticks += 1
        logger.info(f"{self.name} loop stopped")


class HostSampler:
    """Host CPU and memory usage in percent"""

    def cpu_percent(self) -> float:
        return psutil.cpu_percent(interval=None)

    def memory_percent(self) -> float:
        return psutil.virtual_memory().percent


class SessionCoordinator:
    """
    Orchestrates the session lifecycle of one node.

    The active session map is guarded by a readers-writer lock: lookups run
    concurrently, create and disconnect are exclusive. Traffic sampling keeps
    its own lock so it never contends with session changes.
    """

    def __init__(self, node_id: str, repository: Repository,
                 interface_manager: TunnelInterfaceManager,
                 metrics: Optional[MetricsSink] = None,
                 obfuscation: Optional[ObfuscationLayer] = None,
                 subnet: str = "10.8.0.1/24",
                 post_up: Optional[List[str]] = None,
                 post_down: Optional[List[str]] = None,
                 persistent_keepalive: int = 25,
                 keepalive_timeout: float = 600,
                 intervals: Optional[Dict[str, float]] = None,
                 dns: Optional[List[str]] = None,
                 manage_interface: bool = True,
                 host_sampler: Optional[HostSampler] = None,
                 clock: Callable[[], datetime] = utcnow,
                 timer: Callable[[], float] = time.monotonic):
        """
        Initialize the session coordinator

        Args:
            node_id: Id of the node record this coordinator runs
            repository: Node and session store
            interface_manager: Manager of the node's tunnel interface
            metrics: Metrics sink (discarding sink when None)
            obfuscation: Obfuscation layer reported in the heartbeat fields
            subnet: Interface address with prefix; clients get addresses from it
            post_up: Commands run after the interface is up
            post_down: Commands run when the interface is torn down
            persistent_keepalive: Keepalive interval configured on each peer
            keepalive_timeout: Seconds without keepalive before a session is dropped
            intervals: Loop intervals in seconds (heartbeat, monitor, metrics, traffic)
            dns: DNS servers written to client configurations
            manage_interface: Create and tear down the interface in start/stop
            host_sampler: Source of host CPU/memory usage
            clock: Wall clock for session timestamps
            timer: Monotonic timer for traffic rates
        """
        self.node_id = node_id
        self.repository = repository
        self.interface_manager = interface_manager
        self.metrics = metrics or NullMetricsSink()
        self.obfuscation = obfuscation
        self.subnet = subnet
        self.post_up = list(post_up or [])
        self.post_down = list(post_down or [])
        self.persistent_keepalive = persistent_keepalive
        self.keepalive_timeout = timedelta(seconds=keepalive_timeout)
        self.intervals = dict(DEFAULT_INTERVALS, **(intervals or {}))
        self.dns = list(dns or [])
        self.manage_interface = manage_interface
        self.host_sampler = host_sampler or HostSampler()
        self.clock = clock
        self.timer = timer

        self.server_config: Optional[ServerConfig] = None
        self.running = False

        self._sessions: Dict[str, TunnelSession] = {}
        self._session_lock = ReadWriteLock()

        self._traffic_lock = threading.Lock()
        self._last_sample: Optional[Tuple[float, int]] = None
        self._bits_per_second = 0.0

        self._stop_event = threading.Event()
        self._loops: List[ControlLoop] = []

    @classmethod
    def from_config(cls, config, repository: Repository,
                    interface_manager: TunnelInterfaceManager,
                    metrics: Optional[MetricsSink] = None,
                    obfuscation: Optional[ObfuscationLayer] = None) -> "SessionCoordinator":
        """
        Build a coordinator from the ``node`` and ``sessions`` sections of a ConfigManager
        """
        subnet = f"{config.get('node.internal_ip', '10.8.0.1')}/{config.get('node.subnet_prefix', 24)}"
        return cls(
            node_id=config.get("node.node_id"),
            repository=repository,
            interface_manager=interface_manager,
            metrics=metrics,
            obfuscation=obfuscation,
            subnet=subnet,
            post_up=config.get("node.post_up", []),
            post_down=config.get("node.post_down", []),
            persistent_keepalive=config.get("sessions.persistent_keepalive", 25),
            keepalive_timeout=config.get("sessions.keepalive_timeout", 600),
            intervals={
                "heartbeat": config.get("sessions.heartbeat_interval", 30),
                "monitor": config.get("sessions.monitor_interval", 60),
                "metrics": config.get("sessions.metrics_interval", 15),
                "traffic": config.get("sessions.traffic_interval", 1),
            },
            dns=config.get("node.dns", []),
        )

    # Lifecycle

    def start(self) -> None:
        """
        Bring the node up: ensure its key pair, create the tunnel interface,
        restore persisted sessions and start the control loops

        Raises:
            NodeNotFoundError: If the node record does not exist
            CommandError: If the interface cannot be created
        """
        if self.running:
            logger.warning("Session coordinator already running")
            return

        node = self.repository.get_node(self.node_id)
        logger.info(f"Starting node {node.name or node.id} ({node.city}, {node.country})")

        if not node.private_key:
            pair = generate_keypair()
            node = self.repository.update_node(self.node_id, private_key=pair.private_key,
                                               public_key=pair.public_key)
            logger.info("Generated a new server key pair")

        self.server_config = ServerConfig(
            private_key=node.private_key,
            public_key=node.public_key,
            address=self.subnet,
            listen_port=node.wireguard_port,
            interface_name=self.interface_manager.interface_name,
            post_up=self.post_up,
            post_down=self.post_down,
        )
        if self.manage_interface:
            self.interface_manager.create_interface(self.server_config)

        self._restore_sessions()
        self.repository.update_node(self.node_id, status=NodeStatus.ONLINE,
                                    last_heartbeat=self.clock())

        self._stop_event.clear()
        self._loops = [
            ControlLoop("heartbeat", self.intervals["heartbeat"], self.send_heartbeat, self._stop_event),
            ControlLoop("session-monitor", self.intervals["monitor"], self.monitor_sessions, self._stop_event),
            ControlLoop("metrics", self.intervals["metrics"], self.collect_metrics, self._stop_event),
            ControlLoop("traffic", self.intervals["traffic"], self.sample_traffic, self._stop_event),
        ]
        for loop in self._loops:
            loop.start()

        self.running = True
        logger.info(f"Node {self.node_id} started with {self.active_count()} restored session(s)")

    def stop(self) -> None:
        """Stop every loop, disconnect the remaining sessions and take the node offline"""
        if not self.running:
            return

        logger.info(f"Stopping node {self.node_id}")
        self._stop_event.set()
        for loop in self._loops:
            loop.join()
        self._loops = []

        for session in self.list_active_sessions():
            try:
                self.disconnect_session(session.id)
            except SessionNotFoundError:
                pass
            except RelayNodeError as e:
                logger.error(f"Failed to disconnect session {session.id}: {e}")

        if self.manage_interface:
            self.interface_manager.teardown_interface(self.server_config)

        try:
            self.repository.update_node(self.node_id, status=NodeStatus.OFFLINE,
                                        current_connections=0)
        except RelayNodeError as e:
            logger.error(f"Failed to mark node offline: {e}")

        self.running = False
        logger.info(f"Node {self.node_id} stopped")

    def _restore_sessions(self) -> None:
        """Re-register the peers of sessions persisted as active"""
        persisted = self.repository.list_sessions(node_id=self.node_id, status=SessionStatus.ACTIVE)
        with self._session_lock.write_locked():
            for session in persisted:
                try:
                    self.interface_manager.add_peer(self._peer_config(session))
                except CommandError as e:
                    logger.warning(f"Dropping session {session.id}: peer could not be restored: {e}")
                    self.repository.update_session(session.id, status=SessionStatus.DISCONNECTED,
                                                   disconnected_at=self.clock())
                    continue
                self._sessions[session.id] = session

            self.repository.update_node(self.node_id, current_connections=len(self._sessions))

    # Sessions

    def _peer_config(self, session: TunnelSession) -> PeerConfig:
        return PeerConfig(
            public_key=session.peer_public_key,
            allowed_ips=[f"{session.tunnel_address}/32"],
            persistent_keepalive=self.persistent_keepalive,
        )

    def create_session(self, user_id: str, protocol: str = "wireguard",
                       is_multihop: bool = False,
                       next_hop_node_id: Optional[str] = None) -> TunnelSession:
        """
        Create a tunnel session for a user

        Args:
            user_id: Owner of the session
            protocol: Tunnel protocol
            is_multihop: Whether the session is one hop of a chain
            next_hop_node_id: Next node of the chain

        Returns:
            The active session, including the client's private key

        Raises:
            CapacityError: If the node is at its connection limit
            AddressExhaustedError: If the subnet has no free address
            CommandError: If the peer could not be registered (nothing is persisted)
        """
        labels = {"protocol": protocol, "node": self.node_id}

        with self._session_lock.write_locked():
            node = self.repository.get_node(self.node_id)
            if node.current_connections >= node.max_connections:
                self.metrics.inc_counter("relay_connections_total", dict(labels, status="rejected"))
                raise CapacityError(
                    f"node {self.node_id} is at capacity ({node.current_connections}/{node.max_connections})"
                )

            pair = generate_keypair()
            used = [session.tunnel_address for session in self._sessions.values()]
            address = allocate_client_ip(self.subnet, used)

            now = self.clock()
            session = TunnelSession(
                user_id=user_id,
                node_id=self.node_id,
                protocol=protocol,
                tunnel_address=address,
                peer_public_key=pair.public_key,
                private_key=pair.private_key,
                status=SessionStatus.ACTIVE,
                connected_at=now,
                last_keepalive=now,
                is_multihop=is_multihop,
                next_hop_node_id=next_hop_node_id,
            )

            self.repository.create_session(session)
            try:
                self.interface_manager.add_peer(self._peer_config(session))
            except CommandError as e:
                logger.error(f"Failed to add peer for session {session.id}, rolling back: {e}")
                try:
                    self.repository.delete_session(session.id)
                except SessionNotFoundError as delete_error:
                    logger.error(f"Rollback of session {session.id} failed: {delete_error}")
                self.metrics.inc_counter("relay_connections_total", dict(labels, status="failed"))
                raise

            self._sessions[session.id] = session
            self.repository.adjust_node_connections(self.node_id, 1)

        self.metrics.inc_counter("relay_connections_total", dict(labels, status="success"))
        self.metrics.add_gauge("relay_active_connections", labels, 1)
        logger.info(f"Session {session.id} created for user {user_id} at {address}")
        return session

    def disconnect_session(self, session_id: str) -> None:
        """
        Disconnect an active session

        Raises:
            SessionNotFoundError: If no active session has this id
        """
        with self._session_lock.write_locked():
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"session not found: {session_id}")

            try:
                self.interface_manager.remove_peer(session.peer_public_key)
            except (PeerNotFoundError, CommandError) as e:
                logger.warning(f"Failed to remove peer of session {session_id}: {e}")

            del self._sessions[session_id]
            session.status = SessionStatus.DISCONNECTED
            session.disconnected_at = self.clock()

            try:
                self.repository.update_session(session_id, status=session.status,
                                               disconnected_at=session.disconnected_at,
                                               bytes_sent=session.bytes_sent,
                                               bytes_received=session.bytes_received)
            except SessionNotFoundError:
                logger.warning(f"Session record {session_id} vanished before disconnect")
            self.repository.adjust_node_connections(self.node_id, -1)

        self.metrics.add_gauge("relay_active_connections",
                               {"protocol": session.protocol, "node": self.node_id}, -1)
        logger.info(f"Session {session_id} disconnected")

    def record_keepalive(self, session_id: str, when: Optional[datetime] = None) -> None:
        """
        Mark a session as alive

        Raises:
            SessionNotFoundError: If no active session has this id
        """
        when = when or self.clock()
        with self._session_lock.read_locked():
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"session not found: {session_id}")
            session.last_keepalive = when
        self.repository.update_session(session_id, last_keepalive=when)

    def get_session(self, session_id: str) -> TunnelSession:
        with self._session_lock.read_locked():
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"session not found: {session_id}")
        return session

    def list_active_sessions(self) -> List[TunnelSession]:
        with self._session_lock.read_locked():
            return list(self._sessions.values())

    def active_count(self) -> int:
        with self._session_lock.read_locked():
            return len(self._sessions)

    def get_connected_users(self) -> List[str]:
        with self._session_lock.read_locked():
            return sorted({session.user_id for session in self._sessions.values()})

    def client_config(self, session_id: str, allowed_ips: Optional[List[str]] = None) -> str:
        """
        wg-quick configuration a client uses to connect to this node
        """
        session = self.get_session(session_id)
        node = self.repository.get_node(self.node_id)
        return generate_client_config(
            private_key=session.private_key,
            addresses=[f"{session.tunnel_address}/32"],
            peer_public_key=node.public_key,
            peer_endpoint=f"{node.public_ip}:{node.wireguard_port}" if node.public_ip else "",
            allowed_ips=allowed_ips or ["0.0.0.0/0", "::/0"],
            dns=self.dns,
            persistent_keepalive=self.persistent_keepalive,
        )

    # Control loops

    def send_heartbeat(self) -> None:
        """Count the registered peers and refresh the node's status and heartbeat"""
        try:
            peers = self.interface_manager.count_peers()
        except CommandError as e:
            logger.warning(f"Failed to count peers, using session count: {e}")
            peers = self.active_count()

        self.repository.update_node(self.node_id, status=NodeStatus.ONLINE,
                                    last_heartbeat=self.clock(),
                                    current_connections=peers)
        logger.debug(f"Heartbeat sent ({peers} peers)")

    def monitor_sessions(self) -> None:
        """Refresh keepalives from peer handshakes, then drop sessions idle too long"""
        self._refresh_from_handshakes()

        now = self.clock()
        stale = [session.id for session in self.list_active_sessions()
                 if session.last_keepalive is None
                 or now - session.last_keepalive > self.keepalive_timeout]

        for session_id in stale:
            logger.info(f"Session {session_id} timed out")
            try:
                self.disconnect_session(session_id)
            except SessionNotFoundError:
                logger.debug(f"Session {session_id} already disconnected")

    def _refresh_from_handshakes(self) -> None:
        try:
            stats = self.interface_manager.get_stats()
        except CommandError as e:
            logger.warning(f"Failed to read peer statistics: {e}")
            return

        peers = {peer.public_key: peer for peer in stats.peers}
        updates = []
        with self._session_lock.read_locked():
            for session in self._sessions.values():
                peer = peers.get(session.peer_public_key)
                if peer is None:
                    continue
                session.bytes_received = peer.bytes_received
                session.bytes_sent = peer.bytes_sent
                if peer.latest_handshake and (session.last_keepalive is None
                                              or peer.latest_handshake > session.last_keepalive):
                    session.last_keepalive = peer.latest_handshake
                updates.append((session.id, session.last_keepalive,
                                session.bytes_sent, session.bytes_received))

        for session_id, last_keepalive, bytes_sent, bytes_received in updates:
            try:
                self.repository.update_session(session_id, last_keepalive=last_keepalive,
                                               bytes_sent=bytes_sent,
                                               bytes_received=bytes_received)
            except SessionNotFoundError:
                logger.debug(f"Session {session_id} disconnected while refreshing")

    def collect_metrics(self) -> None:
        """Sample host load, recompute the load score and publish the node gauges"""
        cpu = self.host_sampler.cpu_percent()
        memory = self.host_sampler.memory_percent()

        node = self.repository.get_node(self.node_id)
        node.cpu_usage = cpu
        node.memory_usage = memory
        node.load_score = node.calculate_load_score()
        self.repository.update_node(self.node_id, cpu_usage=cpu, memory_usage=memory,
                                    load_score=node.load_score)

        labels = {"node": self.node_id}
        self.metrics.set_gauge("relay_node_status",
                               {"node": self.node_id, "country": node.country, "city": node.city},
                               1 if node.status == NodeStatus.ONLINE else 0)
        self.metrics.set_gauge("relay_node_load_score", labels, node.load_score)
        self.metrics.set_gauge("relay_node_cpu_usage", labels, cpu)
        self.metrics.set_gauge("relay_node_memory_usage", labels, memory)
        self.metrics.set_gauge("relay_node_bandwidth_gbps", labels, node.bandwidth_usage_gbps)

    def sample_traffic(self) -> None:
        """Compute the interface rate from the byte delta since the previous sample"""
        try:
            stats = self.interface_manager.get_stats()
        except CommandError as e:
            logger.warning(f"Failed to read interface counters: {e}")
            return

        total = stats.total_bytes_received + stats.total_bytes_sent
        now = self.timer()

        with self._traffic_lock:
            if self._last_sample is None:
                bits_per_second = 0.0
            else:
                last_time, last_total = self._last_sample
                elapsed = now - last_time
                # Counters reset when peers are removed
                delta = max(0, total - last_total)
                bits_per_second = delta * 8 / elapsed if elapsed > 0 else 0.0
            self._last_sample = (now, total)
            self._bits_per_second = bits_per_second

        gbps = bits_per_second / 1e9
        self.metrics.set_gauge("relay_node_bandwidth_gbps", {"node": self.node_id}, gbps)
        try:
            self.repository.update_node(self.node_id, bandwidth_usage_gbps=gbps)
        except Exception as e:
            logger.warning(f"Failed to persist bandwidth usage: {e}")

    def get_current_traffic_mbps(self) -> float:
        with self._traffic_lock:
            return self._bits_per_second / 1e6

    def heartbeat_fields(self) -> Dict[str, Any]:
        """Node fields read by the gateway's node listing"""
        fields = self.repository.get_node(self.node_id).heartbeat_fields()
        fields.update({
            "interface": self.interface_manager.interface_name,
            "active_sessions": self.active_count(),
            "connected_users": len(self.get_connected_users()),
            "current_traffic_mbps": round(self.get_current_traffic_mbps(), 3),
            "running": self.running,
        })
        if self.obfuscation:
            fields["obfuscation"] = self.obfuscation.status()
        return fields


class MultiHopSessionManager:
    """
    Creates one session per hop of a chain, each on its node's coordinator.

    If any hop fails, the sessions already created are disconnected before the
    error propagates.
    """

    def __init__(self, router: MultiHopRouter, coordinators: Dict[str, SessionCoordinator]):
        self.router = router
        self.coordinators = coordinators

    def create_session(self, user_id: str, countries: List[str], protocol: str = "wireguard",
                       timeout: Optional[float] = None) -> Tuple[HopChain, List[TunnelSession]]:
        """
        Build a chain through the countries and open a session on every hop

        Returns:
            The chain and its sessions, entry first
        """
        chain = self.router.create_chain(user_id, countries, timeout)
        nodes = chain.nodes
        sessions: List[TunnelSession] = []

        try:
            for index, node in enumerate(nodes):
                coordinator = self.coordinators.get(node.id)
                if coordinator is None:
                    raise NodeNotFoundError(f"no coordinator for node {node.id}")
                next_hop = nodes[index + 1].id if index + 1 < len(nodes) else None
                sessions.append(coordinator.create_session(
                    user_id, protocol, is_multihop=True, next_hop_node_id=next_hop
                ))
        except RelayNodeError as e:
            logger.error(f"Hop {len(sessions) + 1} of chain {chain.id} failed, rolling back: {e}")
            for session in reversed(sessions):
                try:
                    self.coordinators[session.node_id].disconnect_session(session.id)
                except RelayNodeError as rollback_error:
                    logger.error(f"Failed to roll back session {session.id}: {rollback_error}")
            raise

        logger.info(f"Multi-hop session over {chain.hop_count} hops created for user {user_id}")
        return chain, sessions
