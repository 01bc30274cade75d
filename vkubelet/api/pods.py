"""Handler that lists pods as a v1 PodList document."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from http import HTTPStatus

from werkzeug.wrappers import Request, Response

from vkubelet.errdefs import handle_error


def _not_implemented(request: Request) -> Response:
    return Response("501 not implemented\n", status=HTTPStatus.NOT_IMPLEMENTED, mimetype="text/plain")


def handle_running_pods(get_pods: Callable[[], Iterable[dict]] | None) -> Callable[[Request], Response]:
    """Make a request handler that returns the listed pods as a JSON PodList."""
    if get_pods is None:
        return _not_implemented

    @handle_error
    def serve(request: Request) -> Response:
        items = list(get_pods())
        pod_list = {
            "kind": "PodList",
            "apiVersion": "v1",
            "metadata": {},
            "items": items or None,
        }
        body = json.dumps(pod_list, separators=(",", ":")) + "\n"
        response = Response(body)
        response.headers["Content-Type"] = "application/json"
        return response

    return serve