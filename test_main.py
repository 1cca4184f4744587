"""
Test program for the relay node entry points.
"""
import json
import logging

from common.utils.config import ConfigManager
from main import RelayNode, create_socks5_server, register_node
from node.models import NodeStatus
from node.storage import MemoryRepository

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('main_test')


def make_config(tmp_path, **node):
    path = tmp_path / "relay_node.json"
    config = ConfigManager(str(path))
    config.update({"node": dict({"name": "zurich-1", "country": "Switzerland",
                                 "country_code": "CH", "city": "Zurich"}, **node)})
    return config, path


def test_register_node_persists_generated_id(tmp_path):
    config, path = make_config(tmp_path)
    repo = MemoryRepository()

    node = register_node(config, repo)

    assert repo.get_node(node.id).name == "zurich-1"
    assert json.loads(path.read_text())["node"]["node_id"] == node.id
    assert register_node(config, repo).id == node.id


def test_register_node_keeps_configured_id(tmp_path):
    config, _ = make_config(tmp_path, node_id="node-42")

    node = register_node(config, MemoryRepository())

    assert node.id == "node-42"
    assert node.wireguard_port == 51820


def test_relay_node_lifecycle(tmp_path, runner):
    config, _ = make_config(tmp_path)
    config.update({"sessions": {"heartbeat_interval": 60, "monitor_interval": 60,
                                "metrics_interval": 60, "traffic_interval": 60}})
    repo = MemoryRepository()
    relay = RelayNode(config, runner=runner, repository=repo)

    assert relay.start()
    node_id = config.get("node.node_id")
    assert repo.get_node(node_id).status == NodeStatus.ONLINE
    assert "ip link add dev wg0 type wireguard" in runner.commands

    relay.stop()

    assert repo.get_node(node_id).status == NodeStatus.OFFLINE
    assert "ip link del dev wg0" in runner.commands


def test_relay_node_start_failure(tmp_path, runner):
    config, _ = make_config(tmp_path)
    runner.fail_on("ip link add")

    relay = RelayNode(config, runner=runner, repository=MemoryRepository())

    assert not relay.start()
    assert not relay.running


def test_socks5_server_from_config(tmp_path):
    config, _ = make_config(tmp_path)
    config.update({"socks5": {"bind_address": "127.0.0.1", "bind_port": 0,
                              "username": "alice", "password": "secret"}})

    server = create_socks5_server(config)

    assert server.get_stats()["auth_enabled"] is True
    assert server.get_stats()["max_connections"] == 256
