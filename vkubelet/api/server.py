"""HTTP routes that the API server expects a kubelet to serve.

Handlers here are callables taking a ``werkzeug`` request and returning a
response. ``pod_handler`` builds a router for pod logs, exec, attach, port
forwarding, pod listing and stats. ``attach_pod_routes`` mounts it on any
object with a ``handle(path, handler)`` method. Metrics routes may need to be
mounted on a different server, depending on the deployment.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Protocol

from werkzeug.exceptions import MethodNotAllowed, NotFound
from werkzeug.routing import Map, RequestRedirect, Rule
from werkzeug.utils import redirect
from werkzeug.wrappers import Request, Response

from vkubelet.api.execopts import get_exec_options
from vkubelet.api.logs import ROUTE_VARS_KEY, handle_container_logs
from vkubelet.api.metrics import handle_pod_metrics_resource
from vkubelet.api.pods import handle_running_pods
from vkubelet.api.stats import handle_pod_stats_summary
from vkubelet.errdefs import InvalidInputError, handle_error

logger = logging.getLogger(__name__)

METRICS_RESOURCE_ROUTE_SUFFIX = "/metrics/resource"
STATS_SUMMARY_ROUTE = "/stats/summary"

Handler = Callable[[Request], Response]


class ServeMux(Protocol):
    """Anything routes can be attached to."""

    def handle(self, path: str, handler: Handler) -> None: ...


@dataclass
class PodHandlerConfig:
    """Provider callbacks behind the pod routes; a missing one makes its route answer 501."""

    run_in_container: Callable[..., Any] | None = None
    attach_to_container: Callable[..., Any] | None = None
    port_forward: Callable[..., Any] | None = None
    get_container_logs: Callable[..., Any] | None = None
    # Pods the provider knows about.
    get_pods: Callable[[], Iterable[dict]] | None = None
    # Pods the node is meant to be running.
    get_pods_from_kubernetes: Callable[[], Iterable[dict]] | None = None
    get_stats_summary: Callable[[], Any] | None = None
    get_metrics_resource: Callable[[], Any] | None = None
    stream_idle_timeout: float = 0
    stream_creation_timeout: float = 0


@dataclass
class PodMetricsConfig:
    """Provider callbacks behind the pod metrics routes."""

    get_stats_summary: Callable[[], Any] | None = None
    get_metrics_resource: Callable[[], Any] | None = None


def _http_error(message: str, status: int) -> Response:
    response = Response(message + "\n", status=status, mimetype="text/plain")
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def not_found(request: Request) -> Response:
    """Answer a request for an endpoint that does not exist."""
    logger.debug("404 request not found")
    return _http_error("404 request not found", HTTPStatus.NOT_FOUND)


def not_implemented(request: Request) -> Response:
    """Answer a request for an API the provider does not implement."""
    logger.debug("501 not implemented")
    return _http_error("501 not implemented", HTTPStatus.NOT_IMPLEMENTED)


class _Router:
    """Dispatches requests by path and method, storing path variables in the environ."""

    def __init__(self) -> None:
        self._map = Map(strict_slashes=True)

    def add(self, path: str, handler: Handler, methods: Iterable[str]) -> None:
        self._map.add(Rule(path, endpoint=handler, methods=list(methods)))

    def __call__(self, request: Request) -> Response:
        adapter = self._map.bind_to_environ(request.environ)
        try:
            handler, values = adapter.match()
        except RequestRedirect as moved:
            return redirect(moved.new_url, code=HTTPStatus.MOVED_PERMANENTLY)
        except MethodNotAllowed as exc:
            response = Response(status=HTTPStatus.METHOD_NOT_ALLOWED)
            if exc.valid_methods:
                response.headers["Allow"] = ", ".join(exc.valid_methods)
            return response
        except NotFound:
            return not_found(request)
        request.environ[ROUTE_VARS_KEY] = dict(values)
        return handler(request)


def _require_upgrade(request: Request) -> None:
    connection = request.headers.get("Connection", "").lower()
    if "upgrade" not in connection or not request.headers.get("Upgrade"):
        raise InvalidInputError("unable to upgrade: missing upgrade headers in request")
    raise RuntimeError(
        f"unable to upgrade: stream protocol {request.headers.get('Upgrade')!r} is not supported"
    )


def _streaming_handler(callback: Callable[..., Any] | None, check_options: bool) -> Handler:
    if callback is None:
        return not_implemented

    @handle_error
    def serve(request: Request) -> Response:
        if check_options:
            get_exec_options(request.values)
        _require_upgrade(request)
        return Response()

    return serve


def instrument_handler(handler: Handler) -> Handler:
    """Wrap a handler so that each request is logged with its URI and path variables."""

    def instrumented(request: Request) -> Response:
        logger.debug(
            "request uri=%s vars=%s",
            request.environ.get("REQUEST_URI", request.full_path),
            request.environ.get(ROUTE_VARS_KEY, {}),
        )
        return handler(request)

    return instrumented


def pod_handler(config: PodHandlerConfig, debug: bool = False) -> Handler:
    """Build a handler for interacting with pods and containers."""
    router = _Router()
    if debug:
        router.add("/runningpods/", handle_running_pods(config.get_pods), ["GET"])
    router.add("/pods", handle_running_pods(config.get_pods_from_kubernetes), ["GET"])
    router.add(
        "/containerLogs/<namespace>/<pod>/<container>",
        handle_container_logs(config.get_container_logs),
        ["GET"],
    )
    router.add(
        "/exec/<namespace>/<pod>/<container>",
        _streaming_handler(config.run_in_container, check_options=True),
        ["POST", "GET"],
    )
    router.add(
        "/attach/<namespace>/<pod>/<container>",
        _streaming_handler(config.attach_to_container, check_options=True),
        ["POST", "GET"],
    )
    router.add(
        "/portForward/<namespace>/<pod>",
        _streaming_handler(config.port_forward, check_options=False),
        ["POST", "GET"],
    )
    if config.get_stats_summary is not None:
        stats = handle_pod_stats_summary(config.get_stats_summary)
        router.add(STATS_SUMMARY_ROUTE, stats, ["GET"])
        router.add(STATS_SUMMARY_ROUTE + "/", stats, ["GET"])
    if config.get_metrics_resource is not None:
        metrics = handle_pod_metrics_resource(config.get_metrics_resource)
        router.add(METRICS_RESOURCE_ROUTE_SUFFIX, metrics, ["GET"])
        router.add(METRICS_RESOURCE_ROUTE_SUFFIX + "/", metrics, ["GET"])
    return router


def pod_stats_summary_handler(func: Callable[[], Any] | None) -> Handler:
    """Build a handler serving pod stats; without func every request gets 501."""
    if func is None:
        return not_implemented
    router = _Router()
    stats = handle_pod_stats_summary(func)
    router.add(STATS_SUMMARY_ROUTE, stats, ["GET"])
    router.add(STATS_SUMMARY_ROUTE + "/", stats, ["GET"])
    return router


def pod_metrics_resource_handler(func: Callable[[], Any] | None) -> Handler:
    """Build a handler serving pod metrics; without func every request gets 501."""
    if func is None:
        return not_implemented
    router = _Router()
    metrics = handle_pod_metrics_resource(func)
    router.add(METRICS_RESOURCE_ROUTE_SUFFIX, metrics, ["GET"])
    router.add(METRICS_RESOURCE_ROUTE_SUFFIX + "/", metrics, ["GET"])
    return router


def attach_pod_routes(config: PodHandlerConfig, mux: ServeMux, debug: bool = False) -> None:
    """Mount the pod routes at the root of mux."""
    mux.handle("/", instrument_handler(pod_handler(config, debug)))


def attach_pod_metrics_routes(config: PodMetricsConfig, mux: ServeMux) -> None:
    """Mount the pod stats and metrics handlers at the root of mux."""
    mux.handle("/", instrument_handler(handle_pod_stats_summary(config.get_stats_summary)))
    mux.handle("/", instrument_handler(handle_pod_metrics_resource(config.get_metrics_resource)))