"""
Linux WebRTC leak protection using iptables.
"""
import logging
from typing import List

from node.platform.base import MDNS_PORT, STUN_PORTS, WebRTCGuard

logger = logging.getLogger("linux")


class LinuxWebRTCGuard(WebRTCGuard):
    """WebRTC leak protection through OUTPUT chain rules"""
    platform = "linux"

    def _rules(self) -> List[List[str]]:
        rules = []
        for server in self.stun_servers:
            rules.append(["-d", server, "-j", "DROP"])
        for port in STUN_PORTS:
            for proto in ("udp", "tcp"):
                rules.append(["-p", proto, "--dport", str(port), "-j", "DROP"])
        rules.append(["-p", "udp", "--dport", str(MDNS_PORT), "-j", "DROP"])
        return rules

    def enable(self) -> None:
        """Install the block rules, then insert the tunnel exceptions at the top of OUTPUT"""
        if self.enabled:
            return
        logger.info("Enabling WebRTC leak protection (iptables)")

        failed = 0
        for rule in self._rules():
            if not self._apply_best_effort(["iptables", "-A", "OUTPUT"] + rule,
                                           ["iptables", "-D", "OUTPUT"] + rule):
                failed += 1

        for port in STUN_PORTS:
            allow = ["-o", self.tunnel_interface, "-p", "udp", "--dport", str(port), "-j", "ACCEPT"]
            if not self._apply_best_effort(["iptables", "-I", "OUTPUT", "1"] + allow,
                                           ["iptables", "-D", "OUTPUT"] + allow):
                failed += 1

        if failed:
            logger.warning(f"WebRTC leak protection enabled with {failed} rule(s) missing")
        self.enabled = True
        logger.info("WebRTC leak protection enabled")

    def disable(self) -> None:
        if not self.enabled:
            return
        logger.info("Disabling WebRTC leak protection")
        self._undo_all()
        self.enabled = False
