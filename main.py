#!/usr/bin/env python3
"""
Main entry point for the VPN relay node.
Provides command-line interfaces for the node service, the SOCKS5 relay and the control API.
"""
import sys
import time
import signal
import logging
import argparse
import threading
from typing import List, Optional

from common.errors import NodeNotFoundError
from common.networking.obfuscation import ObfuscationLayer
from common.networking.socks5 import Socks5Server
from common.utils.commands import CommandRunner, has_admin_privileges
from common.utils.config import ConfigManager
from common.utils.logging_setup import LogManager
from node.metrics import PrometheusMetricsSink
from node.models import VPNNode, new_id
from node.multihop import MultiHopRouter
from node.policy import NetworkPolicyEngine
from node.service import MultiHopSessionManager, SessionCoordinator
from node.storage import Repository, SQLRepository
from node.web.app import initialize_web_app, start_web_server
from node.wireguard import TunnelInterfaceManager

logger = logging.getLogger("main")


def register_node(config: ConfigManager, repository: Repository) -> VPNNode:
    """
    Load this node's record, creating it from the configuration on first run

    A generated node id is written back to the configuration file.
    """
    node_id = config.get("node.node_id")
    if node_id:
        try:
            return repository.get_node(node_id)
        except NodeNotFoundError:
            logger.info(f"Node {node_id} not registered yet")

    node = VPNNode(
        id=node_id or new_id(),
        name=config.get("node.name", ""),
        hostname=config.get("node.hostname", ""),
        public_ip=config.get("node.public_ip", ""),
        internal_ip=config.get("node.internal_ip", "10.8.0.1"),
        country=config.get("node.country", ""),
        country_code=config.get("node.country_code", ""),
        city=config.get("node.city", ""),
        wireguard_port=config.get("node.listen_port", 51820),
        max_connections=config.get("node.max_connections", 1000),
    )
    repository.save_node(node)
    logger.info(f"Registered node {node.id}")

    if not node_id:
        config.set("node.node_id", node.id)
        config.save()
    return node


class RelayNode:
    """
    All components of one relay node, wired from the configuration
    """

    def __init__(self, config: ConfigManager, runner: Optional[CommandRunner] = None,
                 repository: Optional[Repository] = None):
        self.config = config
        self.runner = runner or CommandRunner(config.get("node.command_timeout", 10))
        self.repository = repository or SQLRepository(config.get("database.url", "sqlite://"))
        self.metrics = PrometheusMetricsSink()
        self.running = False

        node = register_node(config, self.repository)
        config.set("node.node_id", node.id)

        secret = config.get("obfuscation.scramble_secret", "")
        self.obfuscation = ObfuscationLayer(config.get("obfuscation.mode", "stealth"),
                                            secret.encode() if secret else None)
        if config.get("obfuscation.enabled", False):
            self.obfuscation.enable()

        self.interface_manager = TunnelInterfaceManager(config.get("node.interface", "wg0"),
                                                        self.runner)
        self.coordinator = SessionCoordinator.from_config(config, self.repository,
                                                          self.interface_manager,
                                                          self.metrics, self.obfuscation)
        self.policy_engine = NetworkPolicyEngine.from_config(config, self.runner)
        self.router = MultiHopRouter(self.repository, config.get("multihop.chain_timeout", 5.0))
        self.multihop_manager = MultiHopSessionManager(self.router, {node.id: self.coordinator})

    def initialize_web(self):
        return initialize_web_app(self.coordinator, self.policy_engine, self.obfuscation,
                                  self.router, self.multihop_manager, self.metrics,
                                  self.config.get("web.api_token", ""))

    def start(self) -> bool:
        """
        Start the node service

        Returns:
            True if successful, False otherwise
        """
        try:
            self.coordinator.start()
            if self.config.get("policy.webrtc_protection", False):
                self.policy_engine.enable_webrtc_protection()
        except Exception as e:
            logger.error(f"Failed to start relay node: {e}", exc_info=True)
            return False

        self.running = True
        return True

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        self.policy_engine.disable_all()
        self.coordinator.stop()


def create_socks5_server(config: ConfigManager) -> Socks5Server:
    return Socks5Server(
        bind_address=config.get("socks5.bind_address", "0.0.0.0"),
        bind_port=config.get("socks5.bind_port", 1080),
        username=config.get("socks5.username") or None,
        password=config.get("socks5.password") or None,
        dial_timeout=config.get("socks5.dial_timeout", 10),
        handshake_timeout=config.get("socks5.handshake_timeout", 30),
        max_connections=config.get("socks5.max_connections", 256),
    )


def parse_args(description: str, argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument('--config', help='Path to configuration file')
    parser.add_argument('--log-level', help='Override the configured log level')
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ConfigManager:
    config = ConfigManager(args.config)
    log_manager = LogManager(config.get("logging", {}))
    if args.log_level:
        log_manager.set_log_level(args.log_level)

    for problem in config.validate():
        logger.warning(f"Configuration: {problem}")
    return config


# Global instances for signal handling
relay = None
socks_server = None


def signal_handler(signum, frame):
    """Handle termination signals"""
    logger.info(f"Received signal {signum}, shutting down")
    if relay:
        relay.stop()
    if socks_server:
        socks_server.stop()
    sys.exit(0)


def server_main(argv: Optional[List[str]] = None) -> int:
    """
    Run the node service with its control API

    Returns:
        Exit code
    """
    global relay

    config = load_config(parse_args("VPN relay node", argv))
    if not has_admin_privileges():
        logger.warning("Not running with administrative privileges; interface setup will likely fail")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    relay = RelayNode(config)
    if not relay.start():
        return 1

    relay.initialize_web()
    web_thread = threading.Thread(
        target=start_web_server,
        args=(config.get("web.bind_address", "127.0.0.1"), config.get("web.bind_port", 8080)),
        name="web-api",
    )
    web_thread.daemon = True
    web_thread.start()

    try:
        logger.info("Relay node running, press Ctrl+C to stop")
        while relay.running:
            time.sleep(1)
    finally:
        relay.stop()
    return 0


def socks_main(argv: Optional[List[str]] = None) -> int:
    """Run the standalone SOCKS5 relay"""
    global socks_server

    config = load_config(parse_args("SOCKS5 relay", argv))
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    socks_server = create_socks5_server(config)
    if not socks_server.start():
        return 1

    try:
        socks_server.serve_forever()
    finally:
        socks_server.stop()
    return 0


def web_main(argv: Optional[List[str]] = None) -> int:
    """Run only the control API, without creating the tunnel interface"""
    global relay

    config = load_config(parse_args("Relay node control API", argv))
    relay = RelayNode(config)
    relay.initialize_web()
    start_web_server(config.get("web.bind_address", "127.0.0.1"), config.get("web.bind_port", 8080))
    return 0


if __name__ == "__main__":
    sys.exit(server_main())
