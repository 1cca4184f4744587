"""
Host network policy for the relay node.
Kill switch, split tunneling and WebRTC leak protection behind one engine.
"""
import re
import socket
import logging
import ipaddress
from typing import Callable, Dict, Any, List, Optional, Tuple

from common.errors import CommandError, InvalidRuleError, KillSwitchError
from common.utils.commands import CommandRunner
from node.models import SplitTunnelRule
from node.platform import create_webrtc_guard
from node.platform.base import HostPolicy, WebRTCGuard, resolve_host

logger = logging.getLogger("policy")

RULE_KINDS = ("ip", "domain", "subnet")
HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)([a-zA-Z0-9_]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*"
                         r"[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.?$")


class KillSwitch(HostPolicy):
    """
    Blocks all outbound traffic that does not leave through the tunnel.

    Rules are applied in a fixed order. If any rule fails, every rule applied
    so far in the same call is reversed and KillSwitchError is raised, so the
    host never keeps a partial lockout.
    """
    name = "killswitch"

    def __init__(self, tunnel_interface: str = "wg0", runner: Optional[CommandRunner] = None):
        super().__init__(runner)
        self.tunnel_interface = tunnel_interface
        self._exceptions: List[List[str]] = []

    def rules(self) -> List[Tuple[List[str], List[str]]]:
        """
        Ordered (apply, undo) command pairs

        Default-deny on OUTPUT, then allow loopback, the tunnel interface,
        established connections, DNS through the tunnel and DHCP.
        """
        allows = [
            ["-o", "lo", "-j", "ACCEPT"],
            ["-o", self.tunnel_interface, "-j", "ACCEPT"],
            ["-m", "conntrack", "--ctstate", "ESTABLISHED,RELATED", "-j", "ACCEPT"],
            ["-p", "udp", "--dport", "53", "-o", self.tunnel_interface, "-j", "ACCEPT"],
            ["-p", "udp", "--dport", "67:68", "-j", "ACCEPT"],
        ]
        pairs = [(["iptables", "-P", "OUTPUT", "DROP"], ["iptables", "-P", "OUTPUT", "ACCEPT"])]
        for allow in allows:
            pairs.append((["iptables", "-A", "OUTPUT"] + allow, ["iptables", "-D", "OUTPUT"] + allow))
        return pairs

    def enable(self) -> None:
        """
        Apply the kill switch rules

        Raises:
            KillSwitchError: If a rule failed; earlier rules have been reversed
        """
        if self.enabled:
            logger.debug("Kill switch already enabled")
            return

        logger.info(f"Enabling kill switch (tunnel interface: {self.tunnel_interface})")
        for step, (apply, undo) in enumerate(self.rules(), start=1):
            try:
                self._apply(apply, undo)
            except CommandError as e:
                rolled_back = [" ".join(cmd) for cmd in reversed(self._applied)]
                logger.error(f"Kill switch rule {step} failed, rolling back {len(rolled_back)} rule(s): {e}")
                self._undo_all()
                raise KillSwitchError(
                    f"failed to apply kill switch rule {step} ({' '.join(apply)}): {e}",
                    rolled_back=rolled_back
                ) from e

        self.enabled = True
        logger.info("Kill switch enabled")

    def disable(self) -> None:
        """Remove the rules and restore the ACCEPT policy (best-effort)"""
        if not self.enabled and not self._exceptions:
            logger.debug("Kill switch not enabled, nothing to disable")
            return

        logger.info("Disabling kill switch")
        self._undo_all()
        for undo in reversed(self._exceptions):
            try:
                self.runner.run(undo)
            except CommandError as e:
                logger.warning(f"{self.name}: failed to remove server exception: {e}")
        self._exceptions.clear()
        self.enabled = False
        logger.info("Kill switch disabled")

    def allow_vpn_server(self, server_ip: str, port: int, protocol: str = "udp") -> None:
        """
        Insert an exception for the VPN server itself at the top of OUTPUT

        Args:
            server_ip: Address of the VPN server
            port: Server port
            protocol: ``udp`` or ``tcp``
        """
        try:
            ipaddress.ip_address(server_ip)
        except ValueError:
            raise InvalidRuleError(f"invalid server address: {server_ip}")
        if protocol not in ("udp", "tcp"):
            raise InvalidRuleError(f"invalid protocol: {protocol}")

        rule = ["-d", server_ip, "-p", protocol, "--dport", str(port), "-j", "ACCEPT"]
        self.runner.run(["iptables", "-I", "OUTPUT", "1"] + rule)
        self._exceptions.append(["iptables", "-D", "OUTPUT"] + rule)
        logger.info(f"Allowed VPN server {server_ip}:{port}/{protocol} through the kill switch")

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "tunnel_interface": self.tunnel_interface,
            "rules_applied": len(self._applied),
            "server_exceptions": len(self._exceptions),
        }


class SplitTunnel(HostPolicy):
    """
    Routes selected destinations through (include) or around (exclude) the
    tunnel using a dedicated routing table.
    """
    name = "splittunnel"

    def __init__(self, tunnel_interface: str = "wg0", table: int = 100,
                 runner: Optional[CommandRunner] = None,
                 resolver: Callable[[str], List[str]] = resolve_host):
        super().__init__(runner)
        self.tunnel_interface = tunnel_interface
        self.table = str(table)
        self.resolver = resolver
        self.included: List[SplitTunnelRule] = []
        self.excluded: List[SplitTunnelRule] = []

    @staticmethod
    def validate_rule(kind: str, value: str, description: str = "") -> SplitTunnelRule:
        """
        Check a rule before it is stored

        Raises:
            InvalidRuleError: For an unknown kind or a malformed value
        """
        value = (value or "").strip()
        if kind not in RULE_KINDS:
            raise InvalidRuleError(f"unknown rule type: {kind}")
        if kind == "ip":
            try:
                value = str(ipaddress.ip_address(value))
            except ValueError:
                raise InvalidRuleError(f"invalid IP address: {value}")
        elif kind == "subnet":
            if "/" not in value:
                raise InvalidRuleError(f"invalid subnet: {value}")
            try:
                value = str(ipaddress.ip_network(value, strict=False))
            except ValueError:
                raise InvalidRuleError(f"invalid subnet: {value}")
        elif not HOSTNAME_RE.match(value):
            raise InvalidRuleError(f"invalid domain: {value}")
        return SplitTunnelRule(kind=kind, value=value, description=description)

    def add_include_rule(self, kind: str, value: str, description: str = "") -> SplitTunnelRule:
        """Route a destination through the tunnel"""
        rule = self.validate_rule(kind, value, description)
        logger.info(f"Adding include rule: {rule.value} ({rule.kind})")
        if self.enabled:
            self._apply_rule(rule, include=True)
        self.included.append(rule)
        return rule

    def add_exclude_rule(self, kind: str, value: str, description: str = "") -> SplitTunnelRule:
        """Route a destination around the tunnel"""
        rule = self.validate_rule(kind, value, description)
        logger.info(f"Adding exclude rule: {rule.value} ({rule.kind})")
        if self.enabled:
            self._apply_rule(rule, include=False)
        self.excluded.append(rule)
        return rule

    def _destinations(self, rule: SplitTunnelRule) -> List[str]:
        if rule.kind != "domain":
            return [rule.value]
        try:
            addresses = self.resolver(rule.value)
        except (socket.gaierror, OSError) as e:
            raise InvalidRuleError(f"failed to resolve domain {rule.value}: {e}")
        if not addresses:
            raise InvalidRuleError(f"domain {rule.value} resolved to no addresses")
        return addresses

    def _apply_rule(self, rule: SplitTunnelRule, include: bool) -> None:
        destinations = self._destinations(rule)
        gateway = None if include else self.default_gateway()

        for destination in destinations:
            try:
                if include:
                    self._route_through_tunnel(destination)
                else:
                    self._route_outside_tunnel(destination, gateway)
            except CommandError as e:
                if rule.kind != "domain":
                    raise
                # One unroutable address does not invalidate the whole domain
                logger.warning(f"Failed to route {destination} for {rule.value}: {e}")

    def _route_through_tunnel(self, destination: str) -> None:
        self._apply(["ip", "rule", "add", "to", destination, "table", self.table],
                    ["ip", "rule", "del", "to", destination, "table", self.table])
        self._apply_best_effort(["ip", "route", "add", destination, "dev", self.tunnel_interface],
                                ["ip", "route", "del", destination, "dev", self.tunnel_interface])

    def _route_outside_tunnel(self, destination: str, gateway: str) -> None:
        self._apply(["ip", "route", "add", destination, "via", gateway],
                    ["ip", "route", "del", destination, "via", gateway])

    def default_gateway(self) -> str:
        """
        Gateway of the host's default route

        Raises:
            CommandError: If there is no default route
        """
        args = ["ip", "route", "show", "default"]
        tokens = self.runner.run(args).split()
        if "via" in tokens and tokens.index("via") + 1 < len(tokens):
            return tokens[tokens.index("via") + 1]
        raise CommandError(args, reason="no default gateway")

    def enable(self) -> None:
        """Install the table's default route and replay every stored rule"""
        if self.enabled:
            return
        logger.info(f"Enabling split tunneling (table {self.table})")

        self._apply_best_effort(
            ["ip", "route", "add", "default", "dev", self.tunnel_interface, "table", self.table],
            ["ip", "route", "del", "default", "dev", self.tunnel_interface, "table", self.table]
        )
        self.enabled = True

        for rules, include in ((self.included, True), (self.excluded, False)):
            for rule in rules:
                try:
                    self._apply_rule(rule, include)
                except (CommandError, InvalidRuleError) as e:
                    logger.warning(f"Failed to apply {'include' if include else 'exclude'} rule {rule.value}: {e}")

        logger.info("Split tunneling enabled")

    def disable(self) -> None:
        """Remove applied routes and rules, flush the table and clear the rule lists"""
        logger.info("Disabling split tunneling")
        if self.enabled:
            self._undo_all()
            try:
                self.runner.run(["ip", "route", "flush", "table", self.table])
            except CommandError as e:
                logger.warning(f"Failed to flush routing table {self.table}: {e}")

        self.included = []
        self.excluded = []
        self.enabled = False

    def get_active_rules(self) -> Tuple[List[SplitTunnelRule], List[SplitTunnelRule]]:
        return list(self.included), list(self.excluded)

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "tunnel_interface": self.tunnel_interface,
            "table": int(self.table),
            "included": [rule.to_dict() for rule in self.included],
            "excluded": [rule.to_dict() for rule in self.excluded],
        }


class NetworkPolicyEngine:
    """
    Host-wide traffic policy, independent of sessions.

    Each policy is chosen once at construction; the WebRTC guard matches the
    running platform unless one is passed in.
    """

    def __init__(self, tunnel_interface: str = "wg0", runner: Optional[CommandRunner] = None,
                 split_tunnel_table: int = 100, kill_switch: Optional[KillSwitch] = None,
                 split_tunnel: Optional[SplitTunnel] = None,
                 webrtc_guard: Optional[WebRTCGuard] = None, system: Optional[str] = None):
        runner = runner or CommandRunner()
        self.tunnel_interface = tunnel_interface
        self.kill_switch = kill_switch or KillSwitch(tunnel_interface, runner)
        self.split_tunnel = split_tunnel or SplitTunnel(tunnel_interface, split_tunnel_table, runner)
        self.webrtc_guard = webrtc_guard or create_webrtc_guard(tunnel_interface, runner, system)

    @classmethod
    def from_config(cls, config, runner: Optional[CommandRunner] = None) -> "NetworkPolicyEngine":
        """
        Build the engine from the ``policy`` section of a ConfigManager
        """
        return cls(
            tunnel_interface=config.get("policy.tunnel_interface", "wg0"),
            runner=runner,
            split_tunnel_table=config.get("policy.split_tunnel_table", 100),
        )

    def enable_kill_switch(self) -> None:
        self.kill_switch.enable()

    def disable_kill_switch(self) -> None:
        self.kill_switch.disable()

    def enable_split_tunnel(self) -> None:
        self.split_tunnel.enable()

    def disable_split_tunnel(self) -> None:
        self.split_tunnel.disable()

    def add_split_tunnel_rule(self, direction: str, kind: str, value: str,
                              description: str = "") -> SplitTunnelRule:
        """
        Add an include or exclude rule

        Args:
            direction: ``include`` or ``exclude``
            kind: ``ip``, ``domain`` or ``subnet``
            value: Address, domain name or CIDR
            description: Free-form note
        """
        if direction == "include":
            return self.split_tunnel.add_include_rule(kind, value, description)
        if direction == "exclude":
            return self.split_tunnel.add_exclude_rule(kind, value, description)
        raise InvalidRuleError(f"unknown rule direction: {direction}")

    def enable_webrtc_protection(self) -> None:
        self.webrtc_guard.enable()

    def disable_webrtc_protection(self) -> None:
        self.webrtc_guard.disable()

    def disable_all(self) -> None:
        """Tear down every policy; each disable path is best-effort"""
        self.disable_webrtc_protection()
        self.disable_split_tunnel()
        self.disable_kill_switch()

    def status(self) -> Dict[str, Any]:
        return {
            "kill_switch": self.kill_switch.status(),
            "split_tunnel": self.split_tunnel.status(),
            "webrtc_protection": self.webrtc_guard.status(),
        }
