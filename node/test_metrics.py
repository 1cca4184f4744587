"""
Test program for the metrics sinks.
"""
import logging

from node.metrics import NullMetricsSink, PrometheusMetricsSink

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('metrics_test')


def test_counter_and_gauges():
    sink = PrometheusMetricsSink()
    labels = {"protocol": "wireguard", "node": "n1"}

    sink.inc_counter("relay_connections_total", dict(labels, status="success"))
    sink.inc_counter("relay_connections_total", dict(labels, status="success"))
    sink.add_gauge("relay_active_connections", labels)
    sink.add_gauge("relay_active_connections", labels, -1)
    sink.add_gauge("relay_active_connections", labels)
    sink.set_gauge("relay_node_load_score", {"node": "n1"}, 12.5)

    assert sink.get_value("relay_connections_total",
                          dict(labels, status="success")) == 2
    assert sink.get_value("relay_active_connections", labels) == 1
    assert sink.get_value("relay_node_load_score", {"node": "n1"}) == 12.5


def test_render_exposition_text():
    sink = PrometheusMetricsSink()
    sink.set_gauge("relay_node_cpu_usage", {"node": "n1"}, 33.0)

    text = sink.render().decode()
    assert 'relay_node_cpu_usage{node="n1"} 33.0' in text


def test_sinks_do_not_share_registries():
    first = PrometheusMetricsSink()
    second = PrometheusMetricsSink()
    first.set_gauge("relay_node_memory_usage", {"node": "n1"}, 5)

    assert second.get_value("relay_node_memory_usage", {"node": "n1"}) is None


def test_unknown_metric_created_on_first_use():
    sink = PrometheusMetricsSink()
    sink.set_gauge("relay_custom_value", {"node": "n1"}, 3)

    assert sink.get_value("relay_custom_value", {"node": "n1"}) == 3


def test_null_sink_discards():
    sink = NullMetricsSink()
    sink.inc_counter("relay_connections_total", {"protocol": "x", "node": "y", "status": "z"})
    sink.set_gauge("relay_node_load_score", {"node": "n1"}, 1)

    assert sink.render() == b""
