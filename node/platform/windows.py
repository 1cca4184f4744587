"""
Windows WebRTC leak protection using netsh advfirewall rules.
"""
import socket
import logging
from typing import List, Tuple

from node.platform.base import MDNS_PORT, STUN_PORTS, WebRTCGuard

logger = logging.getLogger("windows")

RULE_PREFIX = "BlockWebRTC_"


class WindowsWebRTCGuard(WebRTCGuard):
    """
    WebRTC leak protection through named outbound firewall rules.

    The firewall only matches addresses, so STUN hostnames are resolved when
    the protection is enabled.
    """
    platform = "windows"

    def _port_rules(self) -> List[Tuple[str, List[str]]]:
        ports = ",".join(str(port) for port in STUN_PORTS)
        return [
            (f"{RULE_PREFIX}STUN_UDP", ["dir=out", "action=block", "protocol=UDP", f"remoteport={ports}"]),
            (f"{RULE_PREFIX}STUN_TCP", ["dir=out", "action=block", "protocol=TCP", f"remoteport={ports}"]),
            (f"{RULE_PREFIX}mDNS", ["dir=out", "action=block", "protocol=UDP", f"remoteport={MDNS_PORT}"]),
            (f"AllowWebRTC_{self.tunnel_interface}",
             ["dir=out", "action=allow", "protocol=UDP", f"remoteport={ports}", "interfacetype=ras"]),
        ]

    def _add_rule(self, name: str, options: List[str]) -> bool:
        return self._apply_best_effort(
            ["netsh", "advfirewall", "firewall", "add", "rule", f"name={name}"] + options,
            ["netsh", "advfirewall", "firewall", "delete", "rule", f"name={name}"]
        )

    def enable(self) -> None:
        if self.enabled:
            return
        logger.info("Enabling WebRTC leak protection (netsh)")

        for name, options in self._port_rules():
            self._add_rule(name, options)

        for server in self.stun_servers:
            try:
                addresses = self.resolver(server)
            except (socket.gaierror, OSError) as e:
                logger.warning(f"Could not resolve STUN server {server}: {e}")
                continue
            if addresses:
                self._add_rule(f"BlockSTUN_{server}",
                               ["dir=out", "action=block", f"remoteip={','.join(addresses)}"])

        self.enabled = True
        logger.info("WebRTC leak protection enabled")

    def disable(self) -> None:
        if not self.enabled:
            return
        logger.info("Disabling WebRTC leak protection")
        self._undo_all()
        self.enabled = False
