"""HTTP handler that streams container logs, and parsing of its query options."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Any

from werkzeug.wrappers import Request, Response

from vkubelet.errdefs import InvalidInputError, NotFoundError, handle_error

# Key in the WSGI environ under which the router stores the matched path variables.
ROUTE_VARS_KEY = "vkubelet.route_vars"

_CHUNK_SIZE = 8192
_INT_RE = re.compile(r"[+-]?[0-9]+\Z")
_INT_MIN = -(2**63)
_INT_MAX = 2**63 - 1
_RFC3339_RE = re.compile(
    r"([0-9]{4})-([0-9]{2})-([0-9]{2})T([0-9]{2}):([0-9]{2}):([0-9]{2})"
    r"(?:\.([0-9]+))?(Z|[+-][0-9]{2}:[0-9]{2})\Z"
)
_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


@dataclass(frozen=True)
class ContainerLogOpts:
    """Options for a container log stream."""

    tail: int = 0
    limit_bytes: int = 0
    timestamps: bool = False
    follow: bool = False
    previous: bool = False
    since_seconds: int = 0
    since_time: datetime | None = None


LogsHandler = Callable[[str, str, str, ContainerLogOpts], Any]


def _first(query: Mapping[str, Any], key: str) -> str:
    value = query.get(key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return value or ""


def _parse_int(name: str, text: str) -> int:
    if not _INT_RE.match(text):
        raise InvalidInputError(f'could not parse "{name}": invalid integer {text!r}')
    value = int(text)
    if not _INT_MIN <= value <= _INT_MAX:
        raise InvalidInputError(f'could not parse "{name}": value out of range {text!r}')
    return value


def _parse_bool(name: str, text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise InvalidInputError(f'could not parse "{name}": invalid boolean {text!r}')


def _parse_rfc3339(name: str, text: str) -> datetime:
    match = _RFC3339_RE.match(text)
    if match is None:
        raise InvalidInputError(f'could not parse "{name}": invalid RFC 3339 time {text!r}')
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    if zone == "Z":
        tzinfo = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tzinfo = timezone(sign * offset)
    micros = int((fraction or "")[:6].ljust(6, "0"))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tzinfo
        )
    except ValueError as err:
        raise InvalidInputError(f'could not parse "{name}": {err}') from err


def parse_log_options(query: Mapping[str, Any]) -> ContainerLogOpts:
    """Read log stream options from query parameters; raise InvalidInputError on bad values."""
    tail = limit_bytes = since_seconds = 0
    follow = previous = timestamps = False
    since_time = None

    if text := _first(query, "tailLines"):
        tail = _parse_int("tailLines", text)
        if tail < 0:
            raise InvalidInputError(f'"tailLines" is {tail}')
    if text := _first(query, "follow"):
        follow = _parse_bool("follow", text)
    if text := _first(query, "limitBytes"):
        limit_bytes = _parse_int("limitBytes", text)
        if limit_bytes < 1:
            raise InvalidInputError(f'"limitBytes" is {limit_bytes}')
    if text := _first(query, "previous"):
        previous = _parse_bool("previous", text)
    if text := _first(query, "sinceSeconds"):
        since_seconds = _parse_int("sinceSeconds", text)
        if since_seconds < 1:
            raise InvalidInputError(f'"sinceSeconds" is {since_seconds}')
    if text := _first(query, "sinceTime"):
        since_time = _parse_rfc3339("sinceTime", text)
        if since_seconds > 0:
            raise InvalidInputError('both "sinceSeconds" and "sinceTime" are set')
    if text := _first(query, "timestamps"):
        timestamps = _parse_bool("timestamps", text)

    return ContainerLogOpts(
        tail=tail,
        limit_bytes=limit_bytes,
        timestamps=timestamps,
        follow=follow,
        previous=previous,
        since_seconds=since_seconds,
        since_time=since_time,
    )


def _not_implemented(request: Request) -> Response:
    return Response("501 not implemented\n", status=HTTPStatus.NOT_IMPLEMENTED, mimetype="text/plain")


def _chunks(logs: Any) -> Iterable[Any]:
    if hasattr(logs, "read"):
        while chunk := logs.read(_CHUNK_SIZE):
            yield chunk
    else:
        yield from logs


def _stream(logs: Any) -> Iterator[bytes]:
    try:
        for chunk in _chunks(logs):
            yield chunk.encode() if isinstance(chunk, str) else bytes(chunk)
    finally:
        close = getattr(logs, "close", None)
        if close is not None:
            close()


def handle_container_logs(handler: LogsHandler | None) -> Callable[[Request], Response]:
    """Make a request handler that streams the logs a provider returns.

    The handler is called as ``handler(namespace, pod, container, opts)`` and
    returns a readable object or an iterable of chunks, which is closed once sent.
    """
    if handler is None:
        return _not_implemented

    @handle_error
    def serve(request: Request) -> Response:
        route = request.environ.get(ROUTE_VARS_KEY) or {}
        if len(route) != 3:
            raise NotFoundError("not found")
        opts = parse_log_options(request.args)
        try:
            logs = handler(route.get("namespace", ""), route.get("pod", ""), route.get("container", ""), opts)
        except Exception as err:
            raise RuntimeError(f"error getting container logs: {err}") from err
        return Response(_stream(logs), mimetype="text/plain")

    return serve