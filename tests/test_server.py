import io
import json

from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from vkubelet.api.metrics import Metric, MetricFamily, MetricType
from vkubelet.api.server import (
    PodHandlerConfig,
    PodMetricsConfig,
    attach_pod_metrics_routes,
    attach_pod_routes,
    instrument_handler,
    not_found,
    not_implemented,
    pod_handler,
    pod_metrics_resource_handler,
    pod_stats_summary_handler,
)


def call(handler, path, method="GET", **kwargs):
    environ = EnvironBuilder(path=path, method=method, **kwargs).get_environ()
    return handler(Request(environ))


class RecordingMux:
    def __init__(self):
        self.routes = []

    def handle(self, path, handler):
        self.routes.append((path, handler))


def test_not_found_and_not_implemented_messages():
    assert call(not_found, "/x").status_code == 404
    assert call(not_found, "/x").get_data(as_text=True) == "404 request not found\n"
    response = call(not_implemented, "/x")
    assert response.status_code == 501
    assert response.get_data(as_text=True) == "501 not implemented\n"


def test_unknown_path_is_not_found():
    response = call(pod_handler(PodHandlerConfig()), "/nowhere")
    assert response.status_code == 404
    assert "404 request not found" in response.get_data(as_text=True)


def test_pods_without_lister_is_not_implemented():
    assert call(pod_handler(PodHandlerConfig()), "/pods").status_code == 501


def test_pods_lists_from_kubernetes():
    pods = [{"metadata": {"name": "a"}}]
    handler = pod_handler(PodHandlerConfig(get_pods_from_kubernetes=lambda: pods))
    response = call(handler, "/pods")
    assert response.status_code == 200
    body = json.loads(response.get_data(as_text=True))
    assert body["kind"] == "PodList"
    assert body["items"] == pods


def test_pods_rejects_post():
    handler = pod_handler(PodHandlerConfig(get_pods_from_kubernetes=lambda: []))
    assert call(handler, "/pods", method="POST").status_code == 405


def test_running_pods_only_in_debug():
    pods = [{"metadata": {"name": "provider-pod"}}]
    config = PodHandlerConfig(get_pods=lambda: pods)
    assert call(pod_handler(config, False), "/runningpods/").status_code == 404
    response = call(pod_handler(config, True), "/runningpods/")
    assert json.loads(response.get_data(as_text=True))["items"] == pods


def test_running_pods_redirects_without_slash():
    response = call(pod_handler(PodHandlerConfig(get_pods=lambda: []), True), "/runningpods")
    assert response.status_code == 301
    assert response.headers["Location"].endswith("/runningpods/")


def test_container_logs_route_passes_variables_and_options():
    seen = {}

    def logs(namespace, pod, container, opts):
        seen.update(namespace=namespace, pod=pod, container=container, tail=opts.tail)
        return io.BytesIO(b"hello\n")

    handler = pod_handler(PodHandlerConfig(get_container_logs=logs))
    response = call(handler, "/containerLogs/ns/p/c", query_string={"tailLines": "5"})
    assert response.status_code == 200
    assert response.get_data() == b"hello\n"
    assert seen == {"namespace": "ns", "pod": "p", "container": "c", "tail": 5}


def test_container_logs_bad_option_is_bad_request():
    handler = pod_handler(PodHandlerConfig(get_container_logs=lambda *a: io.BytesIO(b"")))
    response = call(handler, "/containerLogs/ns/p/c", query_string={"tailLines": "-1"})
    assert response.status_code == 400


def test_exec_without_handler_is_not_implemented():
    assert call(pod_handler(PodHandlerConfig()), "/exec/ns/p/c").status_code == 501


def test_exec_tty_and_stderr_rejected():
    handler = pod_handler(PodHandlerConfig(run_in_container=lambda *a: None))
    response = call(handler, "/exec/ns/p/c", query_string={"tty": "1", "error": "1"})
    assert response.status_code == 400
    assert "cannot exec with tty and stderr" in response.get_data(as_text=True)


def test_attach_without_streams_rejected():
    handler = pod_handler(PodHandlerConfig(attach_to_container=lambda *a: None))
    response = call(handler, "/attach/ns/p/c", method="POST")
    assert response.status_code == 400
    assert "at least one of stdin, stdout, stderr" in response.get_data(as_text=True)


def test_exec_without_upgrade_headers_rejected():
    handler = pod_handler(PodHandlerConfig(run_in_container=lambda *a: None))
    response = call(handler, "/exec/ns/p/c", query_string={"output": "1"})
    assert response.status_code == 400
    assert "missing upgrade headers" in response.get_data(as_text=True)


def test_port_forward_without_handler_is_not_implemented():
    assert call(pod_handler(PodHandlerConfig()), "/portForward/ns/p", method="POST").status_code == 501


def test_stats_route_only_when_configured():
    assert call(pod_handler(PodHandlerConfig()), "/stats/summary").status_code == 404
    handler = pod_handler(PodHandlerConfig(get_stats_summary=lambda: {"node": {"nodeName": "n"}}))
    for path in ("/stats/summary", "/stats/summary/"):
        response = call(handler, path)
        assert json.loads(response.get_data(as_text=True)) == {"node": {"nodeName": "n"}}


def _families():
    return [MetricFamily(name="up", type=MetricType.GAUGE, metrics=[Metric(value=1.0)])]


def test_metrics_route_content_type():
    handler = pod_handler(PodHandlerConfig(get_metrics_resource=_families))
    response = call(handler, "/metrics/resource")
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "text/plain; version=0.0.4"


def test_stats_summary_handler():
    assert call(pod_stats_summary_handler(None), "/anything").status_code == 501
    handler = pod_stats_summary_handler(lambda: {"pods": []})
    assert json.loads(call(handler, "/stats/summary/").get_data(as_text=True)) == {"pods": []}
    assert call(handler, "/other").status_code == 404


def test_metrics_resource_handler():
    assert call(pod_metrics_resource_handler(None), "/metrics/resource").status_code == 501
    handler = pod_metrics_resource_handler(_families)
    assert call(handler, "/metrics/resource/").status_code == 200
    assert call(handler, "/metrics").status_code == 404


def test_instrument_handler_passes_response_through():
    wrapped = instrument_handler(not_implemented)
    assert call(wrapped, "/x").status_code == 501


def test_attach_pod_routes_mounts_at_root():
    mux = RecordingMux()
    attach_pod_routes(PodHandlerConfig(get_pods_from_kubernetes=lambda: []), mux, False)
    assert [path for path, _ in mux.routes] == ["/"]
    assert call(mux.routes[0][1], "/pods").status_code == 200


def test_attach_pod_metrics_routes_registers_both():
    mux = RecordingMux()
    attach_pod_metrics_routes(PodMetricsConfig(get_metrics_resource=_families), mux)
    assert [path for path, _ in mux.routes] == ["/", "/"]
    assert call(mux.routes[0][1], "/").status_code == 501
    assert call(mux.routes[1][1], "/").status_code == 200