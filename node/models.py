"""
Data model for the relay node.
Nodes, tunnel sessions, hop chains and the tunnel interface configuration types.
"""
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

HEARTBEAT_TIMEOUT = timedelta(minutes=2)
MAX_HEALTHY_LOAD = 90.0


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form stored in the database)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class NodeStatus:
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class SessionStatus:
    PENDING = "pending"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


@dataclass
class VPNNode:
    """A relay node in the fleet"""
    id: str = field(default_factory=new_id)
    name: str = ""
    hostname: str = ""
    public_ip: str = ""
    internal_ip: str = ""
    country: str = ""
    country_code: str = ""
    city: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    wireguard_port: int = 51820
    public_key: str = ""
    private_key: str = ""
    status: str = NodeStatus.OFFLINE
    is_active: bool = True
    max_connections: int = 1000
    current_connections: int = 0
    bandwidth_usage_gbps: float = 0.0
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    load_score: float = 0.0
    latency: int = 0
    supports_multihop: bool = True
    supports_obfuscation: bool = False
    last_heartbeat: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def calculate_load_score(self) -> float:
        """
        Composite load used to rank nodes (lower is better)

        Weighted 40% connection utilisation, 30% CPU and 30% memory.

        Returns:
            Load score in the range 0-100
        """
        if self.max_connections > 0:
            connection_load = self.current_connections / self.max_connections * 100
        else:
            connection_load = 100.0
        return connection_load * 0.4 + self.cpu_usage * 0.3 + self.memory_usage * 0.3

    def is_healthy(self, now: Optional[datetime] = None) -> bool:
        """
        Check whether the node may be used for new sessions

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            True if the node is active, online, recently seen and not overloaded
        """
        now = now or utcnow()
        if not self.is_active or self.status != NodeStatus.ONLINE:
            return False
        if self.last_heartbeat is None or now - self.last_heartbeat > HEARTBEAT_TIMEOUT:
            return False
        return self.load_score <= MAX_HEALTHY_LOAD

    def heartbeat_fields(self) -> Dict[str, Any]:
        """Fields the gateway reads from the node listing"""
        return {
            "node_id": self.id,
            "name": self.name,
            "country": self.country,
            "country_code": self.country_code,
            "city": self.city,
            "public_ip": self.public_ip,
            "wireguard_port": self.wireguard_port,
            "public_key": self.public_key,
            "status": self.status,
            "current_connections": self.current_connections,
            "max_connections": self.max_connections,
            "load_score": round(self.load_score, 2),
            "cpu_usage": self.cpu_usage,
            "memory_usage": self.memory_usage,
            "bandwidth_usage_gbps": self.bandwidth_usage_gbps,
            "latency": self.latency,
            "last_heartbeat": _isoformat(self.last_heartbeat),
        }


@dataclass
class TunnelSession:
    """One user's live tunnel through a relay node"""
    user_id: str
    node_id: str
    id: str = field(default_factory=new_id)
    protocol: str = "wireguard"
    tunnel_address: str = ""
    peer_public_key: str = ""
    private_key: str = ""
    status: str = SessionStatus.PENDING
    connected_at: Optional[datetime] = None
    last_keepalive: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    bytes_sent: int = 0
    bytes_received: int = 0
    is_multihop: bool = False
    next_hop_node_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def to_dict(self, include_private_key: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "node_id": self.node_id,
            "protocol": self.protocol,
            "tunnel_address": self.tunnel_address,
            "peer_public_key": self.peer_public_key,
            "status": self.status,
            "connected_at": _isoformat(self.connected_at),
            "last_keepalive": _isoformat(self.last_keepalive),
            "disconnected_at": _isoformat(self.disconnected_at),
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "is_multihop": self.is_multihop,
            "next_hop_node_id": self.next_hop_node_id,
        }
        if include_private_key:
            data["private_key"] = self.private_key
        return data


@dataclass
class HopChain:
    """Ordered chain of relay nodes a multi-hop session is routed through"""
    user_id: str
    entry_node: VPNNode
    exit_node: VPNNode
    middle_nodes: List[VPNNode] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    protocol: str = "wireguard"
    status: str = SessionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)

    @property
    def nodes(self) -> List[VPNNode]:
        return [self.entry_node] + list(self.middle_nodes) + [self.exit_node]

    @property
    def hop_count(self) -> int:
        return len(self.middle_nodes) + 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "protocol": self.protocol,
            "status": self.status,
            "hop_count": self.hop_count,
            "created_at": _isoformat(self.created_at),
            "nodes": [
                {
                    "node_id": node.id,
                    "name": node.name,
                    "country": node.country,
                    "city": node.city,
                    "latency": node.latency,
                }
                for node in self.nodes
            ],
        }


@dataclass
class PeerConfig:
    """Peer registration on the tunnel interface"""
    public_key: str
    allowed_ips: List[str] = field(default_factory=list)
    preshared_key: Optional[str] = None
    endpoint: Optional[str] = None
    persistent_keepalive: int = 0


@dataclass
class ServerConfig:
    """Configuration of the node's tunnel interface"""
    private_key: str
    address: str
    listen_port: int = 51820
    interface_name: str = "wg0"
    public_key: str = ""
    dns: List[str] = field(default_factory=list)
    mtu: int = 0
    post_up: List[str] = field(default_factory=list)
    post_down: List[str] = field(default_factory=list)


@dataclass
class PeerStats:
    """Counters of one peer parsed from the tunnel tool's dump"""
    public_key: str
    endpoint: str = ""
    allowed_ips: List[str] = field(default_factory=list)
    latest_handshake: Optional[datetime] = None
    bytes_received: int = 0
    bytes_sent: int = 0
    persistent_keepalive: int = 0


@dataclass
class InterfaceStats:
    """Per-peer counters of a tunnel interface"""
    interface_name: str
    peers: List[PeerStats] = field(default_factory=list)

    @property
    def total_bytes_received(self) -> int:
        return sum(peer.bytes_received for peer in self.peers)

    @property
    def total_bytes_sent(self) -> int:
        return sum(peer.bytes_sent for peer in self.peers)


@dataclass
class SplitTunnelRule:
    """Include/exclude rule for split tunneling"""
    kind: str
    value: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NodeInterfaceState:
    """Tunnel interface owned by a node and its current peer table"""
    interface_name: str
    private_key: str
    public_key: str
    listen_port: int
    peers: Dict[str, PeerConfig] = field(default_factory=dict)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
