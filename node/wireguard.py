"""
Tunnel interface management for the relay node.
Drives the ``wg`` and ``ip`` tools to own one WireGuard interface and its peer table.
"""
import logging
import ipaddress
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from common.errors import AddressExhaustedError, CommandError, PeerNotFoundError
from common.utils.commands import CommandRunner, split_lines
from node.models import (
    InterfaceStats, NodeInterfaceState, PeerConfig, PeerStats, ServerConfig
)

logger = logging.getLogger("wireguard")

# Columns of a peer line in ``wg show <if> dump``
DUMP_PEER_FIELDS = 8


class TunnelInterfaceManager:
    """
    Owns one tunnel network interface: key material, peer table and counters.
    """

    def __init__(self, interface_name: str = "wg0", runner: Optional[CommandRunner] = None):
        """
        Initialize the interface manager

        Args:
            interface_name: Name of the tunnel interface
            runner: Command runner used for ``wg``/``ip`` calls
        """
        self.interface_name = interface_name
        self.runner = runner or CommandRunner()
        self.state: Optional[NodeInterfaceState] = None
        self._peers: Dict[str, PeerConfig] = {}
        self._lock = threading.Lock()

    def create_interface(self, config: ServerConfig) -> NodeInterfaceState:
        """
        Create the interface, install its key, address and port, bring it up
        and run the post-up commands in order.

        Every applied step is tracked. If any step fails, the post-down
        commands paired with the post-up commands already applied run in
        reverse order and the interface is deleted before the error is raised.

        Args:
            config: Server interface configuration

        Returns:
            State of the created interface

        Raises:
            CommandError: If any step fails
        """
        name = config.interface_name or self.interface_name
        self.interface_name = name
        logger.info(f"Creating tunnel interface {name} on port {config.listen_port}")

        link_created = False
        applied_post_up = 0
        try:
            self.runner.run(["ip", "link", "add", "dev", name, "type", "wireguard"])
            link_created = True

            self.runner.run(["wg", "set", name, "private-key", "/dev/stdin"],
                            input=config.private_key + "\n")
            self.runner.run(["wg", "set", name, "listen-port", str(config.listen_port)])
            self.runner.run(["ip", "address", "add", config.address, "dev", name])
            if config.mtu:
                self.runner.run(["ip", "link", "set", "mtu", str(config.mtu), "dev", name])
            self.runner.run(["ip", "link", "set", "up", "dev", name])

            for command in config.post_up:
                self.runner.run_shell(command)
                applied_post_up += 1

        except CommandError as e:
            logger.error(f"Failed to create interface {name}: {e}")
            self._rollback_create(name, config, link_created, applied_post_up)
            raise

        with self._lock:
            self._peers = {}
            self.state = NodeInterfaceState(
                interface_name=name,
                private_key=config.private_key,
                public_key=config.public_key,
                listen_port=config.listen_port,
                peers=self._peers,
            )

        logger.info(f"Tunnel interface {name} is up")
        return self.state

    def _rollback_create(self, name: str, config: ServerConfig,
                         link_created: bool, applied_post_up: int) -> None:
        # post_down[i] undoes post_up[i]
        for index in reversed(range(applied_post_up)):
            if index >= len(config.post_down):
                logger.warning(f"No post-down command to undo post-up #{index}: {config.post_up[index]}")
                continue
            try:
                self.runner.run_shell(config.post_down[index])
            except CommandError as e:
                logger.warning(f"Rollback command failed: {e}")

        if link_created:
            try:
                self.runner.run(["ip", "link", "del", "dev", name])
            except CommandError as e:
                logger.warning(f"Failed to delete interface {name} during rollback: {e}")

    def teardown_interface(self, config: Optional[ServerConfig] = None) -> None:
        """
        Run the post-down commands and delete the interface (best-effort)

        Args:
            config: Server configuration whose post-down commands should run
        """
        name = (config.interface_name if config else None) or self.interface_name
        logger.info(f"Tearing down tunnel interface {name}")

        for command in (config.post_down if config else []):
            try:
                self.runner.run_shell(command)
            except CommandError as e:
                logger.warning(f"Post-down command failed: {e}")

        try:
            self.runner.run(["ip", "link", "del", "dev", name])
        except CommandError as e:
            logger.warning(f"Failed to delete interface {name}: {e}")

        with self._lock:
            self._peers.clear()
            self.state = None

    def add_peer(self, peer: PeerConfig) -> None:
        """
        Register a peer on the interface

        Args:
            peer: Peer configuration

        Raises:
            CommandError: If the tunnel tool rejects the peer
        """
        args = ["wg", "set", self.interface_name, "peer", peer.public_key]
        stdin = None
        if peer.preshared_key:
            args += ["preshared-key", "/dev/stdin"]
            stdin = peer.preshared_key + "\n"
        if peer.endpoint:
            args += ["endpoint", peer.endpoint]
        if peer.allowed_ips:
            args += ["allowed-ips", ",".join(peer.allowed_ips)]
        if peer.persistent_keepalive > 0:
            args += ["persistent-keepalive", str(peer.persistent_keepalive)]

        self.runner.run(args, input=stdin)

        with self._lock:
            self._peers[peer.public_key] = peer
        logger.info(f"Added peer {_short_key(peer.public_key)} ({', '.join(peer.allowed_ips)})")

    def remove_peer(self, public_key: str) -> None:
        """
        Deregister a peer

        Raises:
            PeerNotFoundError: If the peer is not registered on this interface
            CommandError: If the tunnel tool fails
        """
        with self._lock:
            if public_key not in self._peers:
                raise PeerNotFoundError(f"peer not found: {_short_key(public_key)}")

        self.runner.run(["wg", "set", self.interface_name, "peer", public_key, "remove"])

        with self._lock:
            self._peers.pop(public_key, None)
        logger.info(f"Removed peer {_short_key(public_key)}")

    def has_peer(self, public_key: str) -> bool:
        with self._lock:
            return public_key in self._peers

    def peer_keys(self) -> List[str]:
        with self._lock:
            return list(self._peers)

    def get_stats(self) -> InterfaceStats:
        """
        Per-peer counters parsed from ``wg show <if> dump``

        Returns:
            Interface statistics; a short or empty dump yields no peers
        """
        output = self.runner.run(["wg", "show", self.interface_name, "dump"])
        return parse_dump(self.interface_name, output)

    def count_peers(self) -> int:
        """Number of peers the tunnel tool reports for the interface"""
        output = self.runner.run(["wg", "show", self.interface_name, "peers"])
        return len(split_lines(output))


def parse_dump(interface_name: str, output: str) -> InterfaceStats:
    """
    Parse the tab-separated output of ``wg show <if> dump``

    The first line describes the interface itself; each further line with at
    least eight fields describes a peer.

    Args:
        interface_name: Name of the interface
        output: Raw command output

    Returns:
        Interface statistics
    """
    stats = InterfaceStats(interface_name=interface_name)
    lines = output.strip().splitlines()
    if len(lines) < 2:
        return stats

    for line in lines[1:]:
        parts = line.split("\t")
        if len(parts) < DUMP_PEER_FIELDS:
            logger.debug(f"Skipping short dump line: {line!r}")
            continue

        allowed = [] if parts[3] in ("", "(none)") else parts[3].split(",")
        stats.peers.append(PeerStats(
            public_key=parts[0],
            endpoint="" if parts[2] == "(none)" else parts[2],
            allowed_ips=allowed,
            latest_handshake=_parse_timestamp(parts[4]),
            bytes_received=_parse_int(parts[5]),
            bytes_sent=_parse_int(parts[6]),
            persistent_keepalive=_parse_int(parts[7]),
        ))

    return stats


def allocate_client_ip(network_cidr: str, used: Iterable[str]) -> str:
    """
    Pick the first free client address in a subnet

    The network address, any address ending in .0 or .255, and the first host
    (the interface's own address) are never handed out.

    Args:
        network_cidr: Node subnet, e.g. ``10.8.0.1/24``
        used: Addresses already assigned (with or without prefix length)

    Returns:
        Free address without prefix length

    Raises:
        AddressExhaustedError: If the subnet has no free address left
    """
    network = ipaddress.ip_network(network_cidr, strict=False)
    taken = {str(ipaddress.ip_interface(addr).ip) for addr in used}
    gateway = network.network_address + 1

    for host in network.hosts():
        if host == gateway:
            continue
        if network.version == 4 and host.packed[-1] in (0, 255):
            continue
        if str(host) not in taken:
            return str(host)

    raise AddressExhaustedError(f"no available addresses in {network}")


def generate_client_config(private_key: str, addresses: List[str], peer_public_key: str,
                           peer_endpoint: str = "", allowed_ips: Optional[List[str]] = None,
                           dns: Optional[List[str]] = None, mtu: int = 0,
                           persistent_keepalive: int = 0,
                           preshared_key: str = "") -> str:
    """
    Render a wg-quick configuration for a client

    Returns:
        INI text with one [Interface] and one [Peer] section
    """
    lines = ["[Interface]", f"PrivateKey = {private_key}"]
    if addresses:
        lines.append(f"Address = {', '.join(addresses)}")
    if dns:
        lines.append(f"DNS = {', '.join(dns)}")
    if mtu > 0:
        lines.append(f"MTU = {mtu}")

    lines += ["", "[Peer]", f"PublicKey = {peer_public_key}"]
    if preshared_key:
        lines.append(f"PresharedKey = {preshared_key}")
    if peer_endpoint:
        lines.append(f"Endpoint = {peer_endpoint}")
    if allowed_ips:
        lines.append(f"AllowedIPs = {', '.join(allowed_ips)}")
    if persistent_keepalive > 0:
        lines.append(f"PersistentKeepalive = {persistent_keepalive}")

    return "\n".join(lines) + "\n"


def generate_server_config(config: ServerConfig, peers: Iterable[PeerConfig] = ()) -> str:
    """
    Render a wg-quick configuration for the node interface

    Returns:
        INI text with the [Interface] section and one [Peer] section per peer
    """
    lines = [
        "[Interface]",
        f"PrivateKey = {config.private_key}",
        f"Address = {config.address}",
        f"ListenPort = {config.listen_port}",
    ]
    lines += [f"PostUp = {command}" for command in config.post_up]
    lines += [f"PostDown = {command}" for command in config.post_down]

    for peer in peers:
        lines += ["", "[Peer]", f"PublicKey = {peer.public_key}"]
        if peer.preshared_key:
            lines.append(f"PresharedKey = {peer.preshared_key}")
        if peer.allowed_ips:
            lines.append(f"AllowedIPs = {', '.join(peer.allowed_ips)}")
        if peer.persistent_keepalive > 0:
            lines.append(f"PersistentKeepalive = {peer.persistent_keepalive}")

    return "\n".join(lines) + "\n"


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        # "off" for a disabled keepalive
        return 0


def _parse_timestamp(value: str) -> Optional[datetime]:
    seconds = _parse_int(value)
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, timezone.utc).replace(tzinfo=None)


def _short_key(public_key: str) -> str:
    return public_key[:8] + "..."
