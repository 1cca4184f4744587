"""
Test program for configuration and logging setup.
"""
import json
import logging

import pytest

from common.utils.config import ConfigManager
from common.utils.logging_setup import LogManager, setup_logging

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('config_test')


@pytest.fixture
def config(tmp_path):
    return ConfigManager(str(tmp_path / "relay_node.json"))


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def test_default_file_is_written(tmp_path, config):
    saved = json.loads((tmp_path / "relay_node.json").read_text())

    assert saved["node"]["listen_port"] == 51820
    assert config.get("sessions.keepalive_timeout") == 600
    assert config.get("socks5.max_connections") == 256


def test_dotted_get_and_set(config):
    config.set("web.api_token", "secret")

    assert config.get("web.api_token") == "secret"
    assert config.get("web.missing", "fallback") == "fallback"
    assert config.get("nothing.at.all") is None


def test_partial_file_keeps_defaults(tmp_path):
    path = tmp_path / "partial.json"
    path.write_text(json.dumps({"node": {"listen_port": 51000}}))

    config = ConfigManager(str(path))

    assert config.get("node.listen_port") == 51000
    assert config.get("node.interface") == "wg0"
    assert config.get("multihop.chain_timeout") == 5.0


def test_validate(config):
    assert config.validate() == []

    config.set("node.internal_ip", "not-an-ip")
    config.set("sessions.monitor_interval", 0)

    problems = config.validate()
    assert any("internal_ip" in problem for problem in problems)
    assert any("monitor_interval" in problem for problem in problems)


def test_log_manager_component_levels(tmp_path, restore_root_logger):
    manager = LogManager({
        "log_level": "INFO",
        "log_file": str(tmp_path / "relay.log"),
        "log_to_console": False,
        "components": {"socks5": "DEBUG", "werkzeug": "WARNING"},
    })

    assert logging.getLogger("socks5").level == logging.DEBUG
    assert logging.getLogger("werkzeug").level == logging.WARNING
    assert manager.get_logger("socks5") is logging.getLogger("socks5")

    logging.getLogger("policy").info("routed to the node log")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "routed to the node log" in (tmp_path / "relay.log").read_text()


def test_log_manager_global_level(restore_root_logger):
    manager = LogManager({"log_level": "INFO", "log_to_console": False,
                          "components": {"service": "DEBUG"}})

    manager.set_log_level("WARNING")

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("service").level == logging.NOTSET


def test_setup_logging_thread_format(restore_root_logger):
    configured = setup_logging("relay_format_test", log_level="DEBUG", include_thread_info=True)

    assert configured.level == logging.DEBUG
    assert "%(threadName)s" in configured.handlers[0].formatter._fmt
