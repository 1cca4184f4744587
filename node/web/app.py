"""
Node control API.
JSON endpoints the gateway uses to manage sessions and policies on this node.
"""
import hmac
import logging
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from common.errors import (
    CapacityError, ChainTimeoutError, GeographicDiversityError, InsufficientNodesError,
    KillSwitchError, NodeNotFoundError, NodeUnhealthyError, RelayNodeError,
    SessionNotFoundError
)
from common.networking.obfuscation import ObfuscationLayer
from node.metrics import MetricsSink, NullMetricsSink
from node.multihop import (
    MultiHopPreferences, MultiHopRouter, calculate_chain_latency, estimate_speed_reduction
)
from node.policy import NetworkPolicyEngine
from node.service import MultiHopSessionManager, SessionCoordinator

logger = logging.getLogger("web_api")

app = Flask(__name__)

# Node components, set by initialize_web_app
coordinator: Optional[SessionCoordinator] = None
policy_engine: Optional[NetworkPolicyEngine] = None
obfuscation: Optional[ObfuscationLayer] = None
router: Optional[MultiHopRouter] = None
multihop_manager: Optional[MultiHopSessionManager] = None
metrics: MetricsSink = NullMetricsSink()
api_token: str = ""

PUBLIC_ENDPOINTS = {"metrics_endpoint", "static"}


def initialize_web_app(session_coordinator: Optional[SessionCoordinator] = None,
                       engine: Optional[NetworkPolicyEngine] = None,
                       obfuscation_layer: Optional[ObfuscationLayer] = None,
                       multihop_router: Optional[MultiHopRouter] = None,
                       session_manager: Optional[MultiHopSessionManager] = None,
                       metrics_sink: Optional[MetricsSink] = None,
                       token: str = "") -> Flask:
    """
    Initialize the web application with the node components

    Args:
        session_coordinator: Session coordinator of this node
        engine: Network policy engine
        obfuscation_layer: Obfuscation layer
        multihop_router: Router used to build hop chains
        session_manager: Manager creating one session per hop
        metrics_sink: Metrics sink rendered at /metrics
        token: Bearer token required on /api routes (no check when empty)

    Returns:
        The Flask application
    """
    global coordinator, policy_engine, obfuscation, router, multihop_manager, metrics, api_token

    coordinator = session_coordinator
    policy_engine = engine
    obfuscation = obfuscation_layer
    router = multihop_router
    multihop_manager = session_manager
    metrics = metrics_sink or NullMetricsSink()
    api_token = token or ""

    if not api_token:
        logger.warning("Node control API has no token configured; requests are not authenticated")
    return app


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.before_request
def check_auth():
    """Require the bearer token on every API route"""
    if not api_token or request.endpoint in PUBLIC_ENDPOINTS:
        return None

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), api_token.encode()):
        logger.warning(f"Rejected unauthenticated request to {request.path} from {request.remote_addr}")
        return _error("Authentication required", 401)
    return None


@app.errorhandler(SessionNotFoundError)
@app.errorhandler(NodeNotFoundError)
def handle_not_found(e):
    return _error(str(e), 404)


@app.errorhandler(CapacityError)
@app.errorhandler(GeographicDiversityError)
def handle_conflict(e):
    return _error(str(e), 409)


@app.errorhandler(InsufficientNodesError)
@app.errorhandler(NodeUnhealthyError)
@app.errorhandler(ChainTimeoutError)
def handle_unavailable(e):
    return _error(str(e), 503)


@app.errorhandler(ValueError)
def handle_bad_request(e):
    return _error(str(e), 400)


@app.errorhandler(KillSwitchError)
def handle_kill_switch(e):
    return jsonify({"error": str(e), "rolled_back": len(e.rolled_back)}), 500


@app.errorhandler(RelayNodeError)
def handle_node_error(e):
    logger.error(f"Node error on {request.path}: {e}")
    return _error(str(e), 500)


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return _error(e.description, e.code)


@app.route('/api/node/status')
def node_status():
    """Heartbeat fields, session counts and policy state"""
    if not coordinator:
        return _error("Node not initialized", 500)

    status = coordinator.heartbeat_fields()
    if obfuscation:
        status["obfuscation"] = obfuscation.status()
    if policy_engine:
        status["policies"] = policy_engine.status()
    return jsonify(status)


@app.route('/api/sessions', methods=['GET', 'POST'])
def sessions():
    """List active sessions or create a new one"""
    if not coordinator:
        return _error("Node not initialized", 500)

    if request.method == 'GET':
        return jsonify([session.to_dict() for session in coordinator.list_active_sessions()])

    data = _payload()
    user_id = data.get("user_id")
    if not user_id:
        return _error("user_id is required", 400)

    session = coordinator.create_session(str(user_id), data.get("protocol", "wireguard"))
    result = session.to_dict(include_private_key=True)
    result["client_config"] = coordinator.client_config(session.id)
    return jsonify(result), 201


@app.route('/api/sessions/<session_id>', methods=['GET', 'DELETE'])
def session_management(session_id):
    """Read or disconnect one session"""
    if not coordinator:
        return _error("Node not initialized", 500)

    if request.method == 'GET':
        return jsonify(coordinator.get_session(session_id).to_dict())

    coordinator.disconnect_session(session_id)
    return jsonify({"success": True})


@app.route('/api/obfuscation')
def obfuscation_status():
    if not obfuscation:
        return jsonify({"enabled": False})
    return jsonify(obfuscation.status())


def _toggle(action: str, enable, disable):
    if action == "enable":
        enable()
    elif action == "disable":
        disable()
    else:
        return _error("Invalid action", 400)
    return None


@app.route('/api/killswitch', methods=['POST'])
def kill_switch_control():
    if not policy_engine:
        return _error("Policy engine not initialized", 500)

    failed = _toggle(_payload().get("action"), policy_engine.enable_kill_switch,
                     policy_engine.disable_kill_switch)
    if failed:
        return failed
    return jsonify(policy_engine.kill_switch.status())


@app.route('/api/split-tunnel', methods=['POST'])
def split_tunnel_control():
    if not policy_engine:
        return _error("Policy engine not initialized", 500)

    failed = _toggle(_payload().get("action"), policy_engine.enable_split_tunnel,
                     policy_engine.disable_split_tunnel)
    if failed:
        return failed
    return jsonify(policy_engine.split_tunnel.status())


@app.route('/api/split-tunnel/rules', methods=['GET', 'POST'])
def split_tunnel_rules():
    """List or add split tunnel rules"""
    if not policy_engine:
        return _error("Policy engine not initialized", 500)

    if request.method == 'GET':
        included, excluded = policy_engine.split_tunnel.get_active_rules()
        return jsonify({
            "include": [rule.to_dict() for rule in included],
            "exclude": [rule.to_dict() for rule in excluded],
        })

    data = _payload()
    rule = policy_engine.add_split_tunnel_rule(
        data.get("direction", ""), data.get("type", ""), data.get("value", ""),
        data.get("description", "")
    )
    return jsonify(rule.to_dict()), 201


@app.route('/api/webrtc', methods=['POST'])
def webrtc_control():
    if not policy_engine:
        return _error("Policy engine not initialized", 500)

    failed = _toggle(_payload().get("action"), policy_engine.enable_webrtc_protection,
                     policy_engine.disable_webrtc_protection)
    if failed:
        return failed
    return jsonify(policy_engine.webrtc_guard.status())


@app.route('/api/multihop', methods=['POST'])
def multihop():
    """
    Build a hop chain

    Accepts ``countries`` (2 to 4 entries), ``entry_country``/``exit_country``
    or a ``priority``. With ``create_sessions`` set, a session is opened on
    every hop.
    """
    if not router:
        return _error("Multi-hop routing not initialized", 500)

    data = _payload()
    user_id = str(data.get("user_id", ""))
    countries = data.get("countries")

    if data.get("create_sessions"):
        if not multihop_manager:
            return _error("Multi-hop sessions not available on this node", 500)
        if not countries:
            countries = [data.get("entry_country", ""), data.get("exit_country", "")]
        chain, hop_sessions = multihop_manager.create_session(user_id, countries,
                                                               data.get("protocol", "wireguard"))
    else:
        hop_sessions = []
        if countries:
            chain = router.create_chain(user_id, countries)
        elif data.get("priority"):
            chain = router.create_recommended_route(user_id, MultiHopPreferences(
                priority=data["priority"],
                entry_country=data.get("entry_country", ""),
                exit_country=data.get("exit_country", ""),
            ))
        else:
            chain = router.create_double_hop(user_id, data.get("entry_country", ""),
                                             data.get("exit_country", ""))

    result = chain.to_dict()
    result["estimated_latency_ms"] = calculate_chain_latency(chain)
    result["speed_reduction"] = estimate_speed_reduction(chain.hop_count)
    if hop_sessions:
        result["sessions"] = [session.to_dict(include_private_key=True) for session in hop_sessions]
    return jsonify(result), 201


@app.route('/api/multihop/statistics/<user_id>')
def multihop_statistics(user_id):
    if not router:
        return _error("Multi-hop routing not initialized", 500)
    return jsonify(router.get_statistics(user_id))


@app.route('/metrics')
def metrics_endpoint():
    """Prometheus text exposition"""
    return Response(metrics.render(), content_type=metrics.content_type)


def start_web_server(host: str = '127.0.0.1', port: int = 8080) -> None:
    """
    Start the web server

    Args:
        host: Host to bind to
        port: Port to bind to
    """
    logger.info(f"Node control API listening on {host}:{port}")
    app.run(host=host, port=port, debug=False, use_reloader=False)
