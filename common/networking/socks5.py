"""
SOCKS5 proxy server for the relay node.
Standalone CONNECT relay used as an alternate transport to the tunnel.
"""
import hmac
import socket
import struct
import logging
import threading
from typing import Dict, Any, Optional, Set, Tuple

from common.errors import Socks5ProtocolError

logger = logging.getLogger("socks5")

SOCKS5_VERSION = 0x05
AUTH_VERSION = 0x01

# Authentication methods
AUTH_NONE = 0x00
AUTH_GSSAPI = 0x01
AUTH_PASSWORD = 0x02
AUTH_NO_ACCEPTABLE = 0xFF

# Address types
ADDR_IPV4 = 0x01
ADDR_DOMAIN = 0x03
ADDR_IPV6 = 0x04

# Commands
CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03

# Reply codes
REPLY_SUCCESS = 0x00
REPLY_GENERAL_FAILURE = 0x01
REPLY_CONNECTION_NOT_ALLOWED = 0x02
REPLY_NETWORK_UNREACHABLE = 0x03
REPLY_HOST_UNREACHABLE = 0x04
REPLY_CONNECTION_REFUSED = 0x05
REPLY_TTL_EXPIRED = 0x06
REPLY_COMMAND_NOT_SUPPORTED = 0x07
REPLY_ADDR_TYPE_NOT_SUPPORTED = 0x08

RELAY_BUFFER_SIZE = 65536
ACCEPT_POLL_INTERVAL = 0.5


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """
    Read exactly ``size`` bytes from a socket

    Raises:
        Socks5ProtocolError: If the peer closes before enough bytes arrive
    """
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            raise Socks5ProtocolError(
                f"connection closed after {size - remaining} of {size} bytes"
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def build_reply(code: int, bind_address: Optional[Tuple[str, int]] = None) -> bytes:
    """
    Build a SOCKS5 reply frame: VER REP RSV ATYP BND.ADDR BND.PORT

    Args:
        code: Reply code
        bind_address: Address the relay bound for the target (defaults to 0.0.0.0:0)
    """
    host, port = bind_address[:2] if bind_address else ("0.0.0.0", 0)
    try:
        addr = socket.inet_pton(socket.AF_INET, host)
        addr_type = ADDR_IPV4
    except OSError:
        addr = socket.inet_pton(socket.AF_INET6, host)
        addr_type = ADDR_IPV6
    return bytes([SOCKS5_VERSION, code, 0x00, addr_type]) + addr + struct.pack("!H", port)


class Socks5Server:
    """
    Threaded SOCKS5 server supporting the CONNECT command.

    Each accepted connection runs in its own thread and relays with one extra
    thread for the opposite direction. A bounded semaphore caps the number of
    connections relayed at once; connections over the cap are closed on accept.
    """

    def __init__(self, bind_address: str = "0.0.0.0", bind_port: int = 1080,
                 username: Optional[str] = None, password: Optional[str] = None,
                 dial_timeout: float = 10.0, handshake_timeout: float = 30.0,
                 max_connections: int = 256):
        """
        Initialize the SOCKS5 server

        Args:
            bind_address: Address to listen on
            bind_port: Port to listen on (0 picks a free port)
            username: Username for RFC 1929 authentication (None disables auth)
            password: Password for RFC 1929 authentication
            dial_timeout: Timeout in seconds for connecting to the target
            handshake_timeout: Timeout in seconds for each handshake read
            max_connections: Maximum number of concurrently relayed connections
        """
        self.bind_address = bind_address
        self.bind_port = bind_port
        self.dial_timeout = dial_timeout
        self.handshake_timeout = handshake_timeout
        self.max_connections = max_connections

        self.auth_method = AUTH_NONE
        self.username = b""
        self.password = b""
        if username:
            self.set_auth(username, password or "")

        self.running = False
        self.server_socket = None
        self.accept_thread = None
        self._stopped = threading.Event()
        self._slots = threading.BoundedSemaphore(max_connections)

        self._conn_lock = threading.Lock()
        self._connections: Set[socket.socket] = set()
        self._handlers: Set[threading.Thread] = set()

        self.stats = {
            "total_connections": 0,
            "rejected_connections": 0,
            "failed_connections": 0,
            "bytes_client_to_target": 0,
            "bytes_target_to_client": 0,
        }

    def set_auth(self, username: str, password: str) -> None:
        """Require username/password authentication"""
        self.username = username.encode("utf-8")
        self.password = password.encode("utf-8")
        self.auth_method = AUTH_PASSWORD

    @property
    def address(self) -> Tuple[str, int]:
        """Address the server is actually bound to"""
        if self.server_socket:
            return self.server_socket.getsockname()[:2]
        return self.bind_address, self.bind_port

    def start(self) -> bool:
        """
        Start listening and accepting connections

        Returns:
            True if the server started, False otherwise
        """
        if self.running:
            logger.warning("SOCKS5 server already running")
            return False

        try:
            family = socket.AF_INET6 if ":" in self.bind_address else socket.AF_INET
            self.server_socket = socket.socket(family, socket.SOCK_STREAM)
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.bind_address, self.bind_port))
            self.server_socket.listen(128)
            # Periodic wakeups let the accept loop observe stop()
            self.server_socket.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError as e:
            logger.error(f"Failed to start SOCKS5 server: {e}")
            if self.server_socket:
                self.server_socket.close()
                self.server_socket = None
            return False

        self.running = True
        self._stopped.clear()

        self.accept_thread = threading.Thread(target=self._accept_thread, name="socks5-accept")
        self.accept_thread.daemon = True
        self.accept_thread.start()

        logger.info(f"SOCKS5 server listening on {self.address[0]}:{self.address[1]}")
        return True

    def serve_forever(self) -> None:
        """Block until the server is stopped"""
        self._stopped.wait()

    def stop(self) -> None:
        """Stop accepting, close every relayed connection and join the handler threads"""
        if not self.running:
            return

        logger.info("Stopping SOCKS5 server")
        self.running = False

        try:
            self.server_socket.close()
        except OSError as e:
            logger.warning(f"Error closing SOCKS5 listener: {e}")

        with self._conn_lock:
            connections = list(self._connections)
            handlers = list(self._handlers)

        for conn in connections:
            _shutdown(conn)

        if self.accept_thread:
            self.accept_thread.join(timeout=5)
        for handler in handlers:
            handler.join(timeout=5)

        self.server_socket = None
        self._stopped.set()
        logger.info("SOCKS5 server stopped")

    def _accept_thread(self) -> None:
        """Thread for accepting client connections"""
        while self.running:
            try:
                client, client_addr = self.server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    break
                logger.error(f"Failed to accept connection: {e}")
                continue

            if not self._slots.acquire(blocking=False):
                logger.warning(
                    f"Rejecting {client_addr[0]}:{client_addr[1]}: "
                    f"{self.max_connections} connections already relayed"
                )
                with self._conn_lock:
                    self.stats["rejected_connections"] += 1
                client.close()
                continue

            handler = threading.Thread(
                target=self._handle_connection,
                args=(client, client_addr),
                name=f"socks5-{client_addr[0]}:{client_addr[1]}"
            )
            handler.daemon = True
            with self._conn_lock:
                self.stats["total_connections"] += 1
                self._connections.add(client)
                self._handlers.add(handler)
            handler.start()

    def _handle_connection(self, client: socket.socket, client_addr: Tuple[str, int]) -> None:
        """
        Run the per-connection state machine: negotiate, authenticate, request, connect, relay

        Args:
            client: Accepted client socket
            client_addr: Client address
        """
        target = None
        try:
            client.settimeout(self.handshake_timeout)

            self._negotiate(client)
            if self.auth_method == AUTH_PASSWORD:
                self._authenticate(client)
            target = self._handle_request(client)

            with self._conn_lock:
                self._connections.add(target)

            client.settimeout(None)
            self._relay(client, target)

        except (Socks5ProtocolError, OSError) as e:
            logger.warning(f"SOCKS5 session with {client_addr[0]}:{client_addr[1]} failed: {e}")
            with self._conn_lock:
                self.stats["failed_connections"] += 1
        finally:
            for sock in (client, target):
                if sock is None:
                    continue
                sock.close()
                with self._conn_lock:
                    self._connections.discard(sock)
            with self._conn_lock:
                self._handlers.discard(threading.current_thread())
            self._slots.release()

    def _negotiate(self, client: socket.socket) -> None:
        """Read the version/method list and select the configured method"""
        version, n_methods = recv_exact(client, 2)
        if version != SOCKS5_VERSION:
            raise Socks5ProtocolError(f"invalid SOCKS version: {version}")

        methods = recv_exact(client, n_methods) if n_methods else b""

        selected = self.auth_method if self.auth_method in methods else AUTH_NO_ACCEPTABLE
        client.sendall(bytes([SOCKS5_VERSION, selected]))

        if selected == AUTH_NO_ACCEPTABLE:
            raise Socks5ProtocolError("no acceptable authentication method")

    def _authenticate(self, client: socket.socket) -> None:
        """Username/password sub-negotiation (RFC 1929)"""
        version, username_len = recv_exact(client, 2)
        if version != AUTH_VERSION:
            raise Socks5ProtocolError(f"invalid auth version: {version}")
        username = recv_exact(client, username_len)
        password_len = recv_exact(client, 1)[0]
        password = recv_exact(client, password_len)

        # Both comparisons always run so timing does not reveal which one failed
        username_ok = hmac.compare_digest(username, self.username)
        password_ok = hmac.compare_digest(password, self.password)
        accepted = username_ok & password_ok

        client.sendall(bytes([AUTH_VERSION, 0x00 if accepted else 0x01]))
        if not accepted:
            raise Socks5ProtocolError("invalid credentials")

    def _handle_request(self, client: socket.socket) -> socket.socket:
        """
        Parse the request and connect to the target

        Returns:
            Connected target socket
        """
        version, command, _reserved, addr_type = recv_exact(client, 4)
        if version != SOCKS5_VERSION:
            client.sendall(build_reply(REPLY_GENERAL_FAILURE))
            raise Socks5ProtocolError(f"invalid request version: {version}")

        if addr_type == ADDR_IPV4:
            host = socket.inet_ntop(socket.AF_INET, recv_exact(client, 4))
        elif addr_type == ADDR_DOMAIN:
            domain_len = recv_exact(client, 1)[0]
            if domain_len == 0:
                client.sendall(build_reply(REPLY_GENERAL_FAILURE))
                raise Socks5ProtocolError("empty domain name")
            try:
                host = recv_exact(client, domain_len).decode("idna")
            except UnicodeError:
                client.sendall(build_reply(REPLY_GENERAL_FAILURE))
                raise Socks5ProtocolError("invalid domain name")
        elif addr_type == ADDR_IPV6:
            host = socket.inet_ntop(socket.AF_INET6, recv_exact(client, 16))
        else:
            client.sendall(build_reply(REPLY_ADDR_TYPE_NOT_SUPPORTED))
            raise Socks5ProtocolError(f"unsupported address type: {addr_type}")

        port = struct.unpack("!H", recv_exact(client, 2))[0]

        if command != CMD_CONNECT:
            client.sendall(build_reply(REPLY_COMMAND_NOT_SUPPORTED))
            if command == CMD_BIND:
                raise Socks5ProtocolError("BIND command not supported")
            if command == CMD_UDP_ASSOCIATE:
                raise Socks5ProtocolError("UDP ASSOCIATE command not supported")
            raise Socks5ProtocolError(f"unknown command: {command}")

        return self._connect(client, host, port)

    def _connect(self, client: socket.socket, host: str, port: int) -> socket.socket:
        """Dial the target with a bounded timeout and send the reply"""
        logger.info(f"Connecting to {host}:{port}")
        try:
            target = socket.create_connection((host, port), timeout=self.dial_timeout)
        except OSError as e:
            logger.warning(f"Failed to connect to {host}:{port}: {e}")
            client.sendall(build_reply(REPLY_CONNECTION_REFUSED))
            raise

        target.settimeout(None)
        try:
            client.sendall(build_reply(REPLY_SUCCESS, target.getsockname()))
        except OSError:
            target.close()
            raise
        return target

    def _relay(self, client: socket.socket, target: socket.socket) -> None:
        """
        Copy bytes in both directions.

        When either direction finishes, both sockets are shut down so the other
        copy unblocks, and its thread is joined before returning.
        """
        upstream = threading.Thread(
            target=self._pipe,
            args=(client, target, "bytes_client_to_target", (client, target)),
            name=f"{threading.current_thread().name}-up"
        )
        upstream.daemon = True
        upstream.start()

        self._pipe(target, client, "bytes_target_to_client", (client, target))
        upstream.join()

    def _pipe(self, src: socket.socket, dst: socket.socket, counter: str,
              pair: Tuple[socket.socket, socket.socket]) -> None:
        copied = 0
        try:
            while True:
                data = src.recv(RELAY_BUFFER_SIZE)
                if not data:
                    break
                dst.sendall(data)
                copied += len(data)
        except OSError as e:
            logger.debug(f"Relay direction closed: {e}")
        finally:
            for sock in pair:
                _shutdown(sock)
            with self._conn_lock:
                self.stats[counter] += copied

    def get_stats(self) -> Dict[str, Any]:
        """
        Get server statistics

        Returns:
            Dictionary with listener settings and connection counters
        """
        host, port = self.address
        with self._conn_lock:
            stats = dict(self.stats)
            stats["active_connections"] = len(self._handlers)

        stats.update({
            "listen_address": f"{host}:{port}",
            "auth_enabled": self.auth_method == AUTH_PASSWORD,
            "dial_timeout": self.dial_timeout,
            "handshake_timeout": self.handshake_timeout,
            "max_connections": self.max_connections,
        })
        return stats


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed or never connected
        pass
