"""
Base classes for host-level network policies.
"""
import socket
import logging
from typing import Dict, Any, List, Optional, Sequence

from common.errors import CommandError
from common.utils.commands import CommandRunner

logger = logging.getLogger("policy")

# STUN/TURN ports (udp and tcp)
STUN_PORTS = (3478, 3479, 5349)
# mDNS (udp) leaks local addresses through ICE candidates
MDNS_PORT = 5353

STUN_SERVERS = (
    "stun.l.google.com",
    "stun1.l.google.com",
    "stun2.l.google.com",
    "stun3.l.google.com",
    "stun4.l.google.com",
    "stun.services.mozilla.com",
    "stun.stunprotocol.org",
    "stun.ekiga.net",
    "stun.ideasip.com",
    "stun.voiparound.com",
    "stun.voipbuster.com",
    "stun.voipstunt.com",
    "stun.counterpath.com",
    "stun.callwithus.com",
)


def resolve_host(hostname: str) -> List[str]:
    """
    Resolve a hostname to its distinct addresses

    Raises:
        socket.gaierror: If the name cannot be resolved
    """
    addresses = []
    for info in socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP):
        address = info[4][0]
        if address not in addresses:
            addresses.append(address)
    return addresses


class HostPolicy:
    """
    A reversible host-wide firewall or routing policy.

    Applied commands are recorded together with the command that undoes them
    so that ``disable()`` can remove exactly what ``enable()`` installed.
    """
    name = "policy"

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()
        self.enabled = False
        self._applied: List[List[str]] = []

    def enable(self) -> None:
        raise NotImplementedError("Subclasses must implement enable")

    def disable(self) -> None:
        raise NotImplementedError("Subclasses must implement disable")

    def status(self) -> Dict[str, Any]:
        return {"enabled": self.enabled}

    def _apply(self, args: Sequence[str], undo: Optional[Sequence[str]] = None,
               input: Optional[str] = None) -> None:
        """Run a command and remember how to reverse it"""
        self.runner.run(args, input=input)
        if undo:
            self._applied.append(list(undo))

    def _apply_best_effort(self, args: Sequence[str], undo: Optional[Sequence[str]] = None,
                           input: Optional[str] = None) -> bool:
        try:
            self._apply(args, undo, input)
            return True
        except CommandError as e:
            logger.warning(f"{self.name}: {e}")
            return False

    def _undo_all(self) -> None:
        """Reverse every recorded command, newest first, logging failures"""
        while self._applied:
            undo = self._applied.pop()
            try:
                self.runner.run(undo)
            except CommandError as e:
                logger.warning(f"{self.name}: failed to undo rule: {e}")


class WebRTCGuard(HostPolicy):
    """
    Blocks STUN/TURN and mDNS traffic that could reveal the host's real
    address, re-allowing STUN only through the tunnel interface.
    """
    name = "webrtc"
    platform = ""

    def __init__(self, tunnel_interface: str = "wg0", runner: Optional[CommandRunner] = None,
                 stun_servers: Sequence[str] = STUN_SERVERS, resolver=resolve_host):
        super().__init__(runner)
        self.tunnel_interface = tunnel_interface
        self.stun_servers = list(stun_servers)
        self.resolver = resolver

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "platform": self.platform,
            "tunnel_interface": self.tunnel_interface,
            "protected_ports": list(STUN_PORTS) + [MDNS_PORT],
            "blocked_servers": len(self.stun_servers),
        }
