"""Handler for the kubelet summary stats endpoint."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from http import HTTPStatus
from typing import Any

from werkzeug.wrappers import Request, Response

from vkubelet.errdefs import handle_error


def is_cancelled(err: BaseException | None) -> bool:
    """Return True if err is a cancellation, or was raised from one."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, asyncio.CancelledError):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


def _not_implemented(request: Request) -> Response:
    return Response("501 not implemented\n", status=HTTPStatus.NOT_IMPLEMENTED, mimetype="text/plain")


def handle_pod_stats_summary(handler: Callable[[], Any] | None) -> Callable[[Request], Response]:
    """Make a request handler that serves the provider's stats summary as JSON."""
    if handler is None:
        return _not_implemented

    @handle_error
    def serve(request: Request) -> Response:
        try:
            stats = handler()
        except Exception as err:
            if is_cancelled(err):
                raise
            raise RuntimeError(f"error getting status from provider: {err}") from err
        try:
            body = json.dumps(stats, separators=(",", ":"))
        except (TypeError, ValueError) as err:
            raise RuntimeError(f"error marshalling stats: {err}") from err
        return Response(body)

    return serve