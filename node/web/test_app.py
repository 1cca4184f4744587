"""
Test program for the node control API.
"""
import logging

import pytest

from common.networking.obfuscation import ObfuscationLayer
from node.metrics import PrometheusMetricsSink
from node.models import NodeStatus, VPNNode, utcnow
from node.multihop import MultiHopRouter
from node.policy import NetworkPolicyEngine
from node.service import SessionCoordinator
from node.storage import MemoryRepository
from node.web.app import app, initialize_web_app
from node.wireguard import TunnelInterfaceManager

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('web_api_test')

TOKEN = "node-secret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def node(runner):
    repo = MemoryRepository()
    for name, country, code, city in [("zurich-1", "Switzerland", "CH", "Zurich"),
                                      ("reykjavik-1", "Iceland", "IS", "Reykjavik")]:
        repo.save_node(VPNNode(name=name, country=country, country_code=code, city=city,
                               public_ip="203.0.113.10", public_key="server-public-key",
                               status=NodeStatus.ONLINE, last_heartbeat=utcnow(),
                               max_connections=1))
    local = repo.list_nodes(country_code="CH")[0]
    metrics = PrometheusMetricsSink()
    coordinator = SessionCoordinator(local.id, repo, TunnelInterfaceManager("wg0", runner),
                                     metrics=metrics, manage_interface=False)
    initialize_web_app(
        coordinator,
        NetworkPolicyEngine("wg0", runner, system="linux"),
        ObfuscationLayer("stealth"),
        MultiHopRouter(repo),
        metrics_sink=metrics,
        token=TOKEN,
    )
    app.config["TESTING"] = True
    return coordinator


@pytest.fixture
def client(node):
    return app.test_client()


def test_requires_bearer_token(client):
    assert client.get("/api/node/status").status_code == 401
    assert client.get("/api/node/status",
                      headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/node/status", headers=AUTH).status_code == 200


def test_metrics_are_public(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert b"relay_active_connections" in response.data


def test_node_status(client, node):
    data = client.get("/api/node/status", headers=AUTH).get_json()

    assert data["node_id"] == node.node_id
    assert data["active_sessions"] == 0
    assert data["obfuscation"]["mode"] == "stealth"
    assert data["policies"]["kill_switch"]["enabled"] is False


def test_session_lifecycle(client):
    response = client.post("/api/sessions", json={"user_id": "user-1"}, headers=AUTH)
    assert response.status_code == 201
    session = response.get_json()
    assert session["tunnel_address"] == "10.8.0.2"
    assert "PublicKey = server-public-key" in session["client_config"]
    assert session["private_key"]

    listed = client.get("/api/sessions", headers=AUTH).get_json()
    assert [s["id"] for s in listed] == [session["id"]]
    assert "private_key" not in listed[0]

    assert client.delete(f"/api/sessions/{session['id']}", headers=AUTH).status_code == 200
    assert client.delete(f"/api/sessions/{session['id']}", headers=AUTH).status_code == 404


def test_session_requires_user(client):
    assert client.post("/api/sessions", json={}, headers=AUTH).status_code == 400


def test_capacity_is_a_conflict(client):
    client.post("/api/sessions", json={"user_id": "user-1"}, headers=AUTH)

    response = client.post("/api/sessions", json={"user_id": "user-2"}, headers=AUTH)

    assert response.status_code == 409
    assert "capacity" in response.get_json()["error"]


def test_obfuscation_status(client):
    data = client.get("/api/obfuscation", headers=AUTH).get_json()
    assert data["mode"] == "stealth"


def test_kill_switch_toggle(client, runner):
    response = client.post("/api/killswitch", json={"action": "enable"}, headers=AUTH)

    assert response.get_json()["enabled"] is True
    assert "iptables -P OUTPUT DROP" in runner.commands
    assert client.post("/api/killswitch", json={"action": "maybe"}, headers=AUTH).status_code == 400


def test_kill_switch_failure_reports_rollback(client, runner):
    runner.fail_on("conntrack")

    response = client.post("/api/killswitch", json={"action": "enable"}, headers=AUTH)

    assert response.status_code == 500
    assert response.get_json()["rolled_back"] == 3


def test_split_tunnel_rules(client):
    response = client.post("/api/split-tunnel/rules", headers=AUTH,
                           json={"direction": "exclude", "type": "subnet", "value": "192.0.2.0/24"})
    assert response.status_code == 201

    rules = client.get("/api/split-tunnel/rules", headers=AUTH).get_json()
    assert rules["exclude"][0]["value"] == "192.0.2.0/24"

    bad = client.post("/api/split-tunnel/rules", headers=AUTH,
                      json={"direction": "include", "type": "ip", "value": "999.0.0.1"})
    assert bad.status_code == 400


def test_multihop_chain(client):
    response = client.post("/api/multihop", headers=AUTH,
                           json={"user_id": "user-1", "entry_country": "CH", "exit_country": "IS"})

    assert response.status_code == 201
    data = response.get_json()
    assert data["hop_count"] == 2
    assert [n["country"] for n in data["nodes"]] == ["Switzerland", "Iceland"]
    assert data["speed_reduction"] == 0.70


def test_multihop_errors(client, node):
    node.repository.save_node(VPNNode(name="geneva-1", country="Switzerland", country_code="CH",
                                      city="Geneva", status=NodeStatus.ONLINE,
                                      last_heartbeat=utcnow()))
    same =client.post("/api/multihop", headers=AUTH,
                       json={"user_id": "user-1", "countries": ["CH", "CH"]})
    missing = client.post("/api/multihop", headers=AUTH,
                          json={"user_id": "user-1", "countries": ["CH", "JP"]})
    too_short = client.post("/api/multihop", headers=AUTH,
                            json={"user_id": "user-1", "countries": ["CH"]})

    assert same.status_code == 409
    assert missing.status_code == 503
    assert too_short.status_code == 400


def test_unknown_route_is_json(client):
    response = client.get("/api/nothing", headers=AUTH)

    assert response.status_code == 404
    assert "error" in response.get_json()
