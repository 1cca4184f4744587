"""
Persistence for the relay node.
Record CRUD for nodes and tunnel sessions behind one abstract repository.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import nullcontext
from dataclasses import fields
from typing import Dict, Any, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Float, Integer, String,
    create_engine, select
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from common.errors import NodeNotFoundError, SessionNotFoundError
from node.models import TunnelSession, VPNNode, utcnow

logger = logging.getLogger("storage")


class Repository(ABC):
    """
    Record CRUD by primary key and by filter.

    Components receive a repository explicitly; there is no process-wide
    database handle.
    """

    # Nodes

    @abstractmethod
    def get_node(self, node_id: str) -> VPNNode:
        """Raises NodeNotFoundError for an unknown id"""

    @abstractmethod
    def list_nodes(self, **filters) -> List[VPNNode]:
        """Nodes whose attributes equal every given filter value"""

    @abstractmethod
    def save_node(self, node: VPNNode) -> VPNNode:
        """Insert or replace a node"""

    @abstractmethod
    def update_node(self, node_id: str, **values) -> VPNNode:
        """Update selected fields of a node"""

    @abstractmethod
    def adjust_node_connections(self, node_id: str, delta: int) -> int:
        """Add ``delta`` to the node's connection counter, never going below zero"""

    @abstractmethod
    def delete_node(self, node_id: str) -> None:
        pass

    # Sessions

    @abstractmethod
    def create_session(self, session: TunnelSession) -> TunnelSession:
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> TunnelSession:
        """Raises SessionNotFoundError for an unknown id"""

    @abstractmethod
    def list_sessions(self, node_id: Optional[str] = None, status: Optional[str] = None,
                      user_id: Optional[str] = None) -> List[TunnelSession]:
        pass

    @abstractmethod
    def update_session(self, session_id: str, **values) -> TunnelSession:
        pass

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        pass


class MemoryRepository(Repository):
    """Thread-safe in-process store; returns copies so callers never share records"""

    def __init__(self):
        self._lock = threading.Lock()
        self._nodes: Dict[str, VPNNode] = {}
        self._sessions: Dict[str, TunnelSession] = {}

    def get_node(self, node_id: str) -> VPNNode:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(f"node not found: {node_id}")
            return copy.deepcopy(node)

    def list_nodes(self, **filters) -> List[VPNNode]:
        with self._lock:
            return [copy.deepcopy(node) for node in self._nodes.values()
                    if _matches(node, filters)]

    def save_node(self, node: VPNNode) -> VPNNode:
        with self._lock:
            self._nodes[node.id] = copy.deepcopy(node)
        return node

    def update_node(self, node_id: str, **values) -> VPNNode:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(f"node not found: {node_id}")
            _apply(node, values)
            node.updated_at = utcnow()
            return copy.deepcopy(node)

    def adjust_node_connections(self, node_id: str, delta: int) -> int:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(f"node not found: {node_id}")
            node.current_connections = max(0, node.current_connections + delta)
            node.updated_at = utcnow()
            return node.current_connections

    def delete_node(self, node_id: str) -> None:
        with self._lock:
            if self._nodes.pop(node_id, None) is None:
                raise NodeNotFoundError(f"node not found: {node_id}")

    def create_session(self, session: TunnelSession) -> TunnelSession:
        with self._lock:
            self._sessions[session.id] = copy.deepcopy(session)
        return session

    def get_session(self, session_id: str) -> TunnelSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"session not found: {session_id}")
            return copy.deepcopy(session)

    def list_sessions(self, node_id: Optional[str] = None, status: Optional[str] = None,
                      user_id: Optional[str] = None) -> List[TunnelSession]:
        filters = _filters(node_id=node_id, status=status, user_id=user_id)
        with self._lock:
            return [copy.deepcopy(session) for session in self._sessions.values()
                    if _matches(session, filters)]

    def update_session(self, session_id: str, **values) -> TunnelSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"session not found: {session_id}")
            _apply(session, values)
            return copy.deepcopy(session)

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise SessionNotFoundError(f"session not found: {session_id}")


# SQLAlchemy store

class Base(DeclarativeBase):
    pass


class NodeRecord(Base):
    """Relay node row"""
    __tablename__ = "vpn_nodes"

    id = Column(String(36), primary_key=True)
    name = Column(String(128), nullable=False, default="")
    hostname = Column(String(255), default="")
    public_ip = Column(String(45), default="")
    internal_ip = Column(String(45), default="")
    country = Column(String(64), index=True, default="")
    country_code = Column(String(2), default="")
    city = Column(String(64), default="")
    latitude = Column(Float, default=0.0)
    longitude = Column(Float, default=0.0)
    wireguard_port = Column(Integer, default=51820)
    public_key = Column(String(64), default="")
    private_key = Column(String(64), default="")
    status = Column(String(16), index=True, default="offline")
    is_active = Column(Boolean, default=True)
    max_connections = Column(Integer, default=1000)
    current_connections = Column(Integer, default=0)
    bandwidth_usage_gbps = Column(Float, default=0.0)
    cpu_usage = Column(Float, default=0.0)
    memory_usage = Column(Float, default=0.0)
    load_score = Column(Float, default=0.0)
    latency = Column(Integer, default=0)
    supports_multihop = Column(Boolean, default=True)
    supports_obfuscation = Column(Boolean, default=False)
    last_heartbeat = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f'<VPNNode {self.name} ({self.country}/{self.city})>'


class SessionRecord(Base):
    """Tunnel session row"""
    __tablename__ = "tunnel_sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), index=True, nullable=False)
    node_id = Column(String(36), index=True, nullable=False)
    protocol = Column(String(16), default="wireguard")
    tunnel_address = Column(String(45), default="")
    peer_public_key = Column(String(64), default="")
    private_key = Column(String(64), default="")
    status = Column(String(16), index=True, default="pending")
    connected_at = Column(DateTime)
    last_keepalive = Column(DateTime)
    disconnected_at = Column(DateTime)
    bytes_sent = Column(BigInteger, default=0)
    bytes_received = Column(BigInteger, default=0)
    is_multihop = Column(Boolean, default=False)
    next_hop_node_id = Column(String(36))

    def __repr__(self):
        return f'<TunnelSession {self.id} ({self.tunnel_address}) on {self.node_id}>'


class SQLRepository(Repository):
    """Repository backed by any SQLAlchemy database URL"""

    def __init__(self, url: str = "sqlite://", create_tables: bool = True):
        """
        Initialize the SQL repository

        Args:
            url: SQLAlchemy database URL (``sqlite://`` keeps everything in memory)
            create_tables: Create missing tables on startup
        """
        self.url = url
        if url.startswith("sqlite"):
            # One shared connection for in-memory databases used across threads
            options = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                options["poolclass"] = StaticPool
            self._lock = threading.RLock()
        else:
            options = {"pool_recycle": 300, "pool_pre_ping": True}
            self._lock = None

        self.engine = create_engine(url, **options)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)

        if create_tables:
            Base.metadata.create_all(self.engine)
        logger.info(f"SQL repository ready ({self.engine.url.render_as_string(hide_password=True)})")

    def _locked(self):
        return self._lock if self._lock is not None else nullcontext()

    def _node(self, db, node_id: str) -> NodeRecord:
        record = db.get(NodeRecord, node_id)
        if record is None:
            raise NodeNotFoundError(f"node not found: {node_id}")
        return record

    def _session(self, db, session_id: str) -> SessionRecord:
        record = db.get(SessionRecord, session_id)
        if record is None:
            raise SessionNotFoundError(f"session not found: {session_id}")
        return record

    def get_node(self, node_id: str) -> VPNNode:
        with self._locked(), self.Session() as db:
            return _to_model(VPNNode, self._node(db, node_id))

    def list_nodes(self, **filters) -> List[VPNNode]:
        with self._locked(), self.Session() as db:
            records = db.scalars(select(NodeRecord).filter_by(**filters)).all()
            return [_to_model(VPNNode, record) for record in records]

    def save_node(self, node: VPNNode) -> VPNNode:
        with self._locked(), self.Session.begin() as db:
            db.merge(NodeRecord(**_to_values(node)))
        return node

    def update_node(self, node_id: str, **values) -> VPNNode:
        with self._locked(), self.Session.begin() as db:
            record = self._node(db, node_id)
            _apply(record, values)
            record.updated_at = utcnow()
            return _to_model(VPNNode, record)

    def adjust_node_connections(self, node_id: str, delta: int) -> int:
        with self._locked(), self.Session.begin() as db:
            record = db.scalars(
                select(NodeRecord).where(NodeRecord.id == node_id).with_for_update()
            ).first()
            if record is None:
                raise NodeNotFoundError(f"node not found: {node_id}")
            record.current_connections = max(0, (record.current_connections or 0) + delta)
            record.updated_at = utcnow()
            return record.current_connections

    def delete_node(self, node_id: str) -> None:
        with self._locked(), self.Session.begin() as db:
            db.delete(self._node(db, node_id))

    def create_session(self, session: TunnelSession) -> TunnelSession:
        with self._locked(), self.Session.begin() as db:
            db.add(SessionRecord(**_to_values(session)))
        return session

    def get_session(self, session_id: str) -> TunnelSession:
        with self._locked(), self.Session() as db:
            return _to_model(TunnelSession, self._session(db, session_id))

    def list_sessions(self, node_id: Optional[str] = None, status: Optional[str] = None,
                      user_id: Optional[str] = None) -> List[TunnelSession]:
        filters = _filters(node_id=node_id, status=status, user_id=user_id)
        with self._locked(), self.Session() as db:
            records = db.scalars(select(SessionRecord).filter_by(**filters)).all()
            return [_to_model(TunnelSession, record) for record in records]

    def update_session(self, session_id: str, **values) -> TunnelSession:
        with self._locked(), self.Session.begin() as db:
            record = self._session(db, session_id)
            _apply(record, values)
            return _to_model(TunnelSession, record)

    def delete_session(self, session_id: str) -> None:
        with self._locked(), self.Session.begin() as db:
            db.delete(self._session(db, session_id))

    def close(self) -> None:
        self.engine.dispose()


def _filters(**values) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _matches(obj, filters: Dict[str, Any]) -> bool:
    return all(getattr(obj, key) == value for key, value in filters.items())


def _apply(obj, values: Dict[str, Any]) -> None:
    for key, value in values.items():
        if not hasattr(obj, key):
            raise AttributeError(f"{type(obj).__name__} has no field {key}")
        setattr(obj, key, value)


def _to_values(model) -> Dict[str, Any]:
    return {f.name: getattr(model, f.name) for f in fields(model)}


def _to_model(cls, record):
    return cls(**{f.name: getattr(record, f.name) for f in fields(cls)})
