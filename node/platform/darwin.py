"""
macOS WebRTC leak protection using a pf anchor.
"""
import logging

from common.errors import CommandError
from node.platform.base import MDNS_PORT, STUN_PORTS, WebRTCGuard

logger = logging.getLogger("darwin")

PF_ANCHOR = "com.relaynode.webrtc"


class DarwinWebRTCGuard(WebRTCGuard):
    """
    Loads the WebRTC rules into a dedicated pf anchor so that disabling
    flushes only these rules and leaves the rest of the ruleset intact.
    """
    platform = "darwin"

    def ruleset(self) -> str:
        ports = " ".join(str(port) for port in STUN_PORTS)
        servers = " ".join(self.stun_servers)
        lines = [
            f"table <blocked_stun> {{ {servers} }}",
            f"pass out quick on {self.tunnel_interface} proto udp to any port {{ {ports} }}",
            f"block drop out quick proto {{ udp tcp }} to any port {{ {ports} }}",
            f"block drop out quick proto udp to any port {MDNS_PORT}",
            "block drop out quick to <blocked_stun>",
        ]
        return "\n".join(lines) + "\n"

    def enable(self) -> None:
        if self.enabled:
            return
        logger.info(f"Enabling WebRTC leak protection (pf anchor {PF_ANCHOR})")

        if self._apply_best_effort(["pfctl", "-a", PF_ANCHOR, "-f", "-"],
                                   ["pfctl", "-a", PF_ANCHOR, "-F", "all"],
                                   input=self.ruleset()):
            try:
                # Fails harmlessly when pf is already enabled
                self.runner.run(["pfctl", "-e"])
            except CommandError as e:
                logger.debug(f"pfctl -e: {e}")

        self.enabled = True
        logger.info("WebRTC leak protection enabled")

    def disable(self) -> None:
        if not self.enabled:
            return
        logger.info("Disabling WebRTC leak protection")
        self._undo_all()
        self.enabled = False
