"""Error kinds shared by the controllers and HTTP handlers, and their HTTP mapping."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from http import HTTPStatus

from werkzeug.wrappers import Request, Response

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    """The requested object does not exist."""


class InvalidInputError(Exception):
    """The caller supplied input that cannot be used."""


class ConflictError(Exception):
    """The object was changed concurrently and the write was rejected."""


def _causes(err: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def is_not_found(err: BaseException | None) -> bool:
    """Return True if err, or anything it was raised from, is a NotFoundError."""
    return any(isinstance(e, NotFoundError) for e in _causes(err))


def is_invalid_input(err: BaseException | None) -> bool:
    """Return True if err, or anything it was raised from, is an InvalidInputError."""
    return any(isinstance(e, InvalidInputError) for e in _causes(err))


def is_conflict(err: BaseException | None) -> bool:
    """Return True if err, or anything it was raised from, is a ConflictError."""
    return any(isinstance(e, ConflictError) for e in _causes(err))


def http_status_code(err: BaseException | None) -> int:
    """Map an error to the HTTP status code that reports it."""
    if err is None:
        return HTTPStatus.OK
    if is_not_found(err):
        return HTTPStatus.NOT_FOUND
    if is_invalid_input(err):
        return HTTPStatus.BAD_REQUEST
    return HTTPStatus.INTERNAL_SERVER_ERROR


def handle_error(func: Callable[[Request], Response | None]) -> Callable[[Request], Response]:
    """Wrap a request handler so that raised errors become HTTP error responses."""

    def wrapper(request: Request) -> Response:
        try:
            response = func(request)
        except Exception as err:  # noqa: BLE001 - every handler error is reported to the client
            code = http_status_code(err)
            if code >= 500:
                logger.error("Internal server error on request: %s (status %d)", err, code)
            else:
                logger.debug("Error on request: %s (status %d)", err, code)
            return Response(str(err), status=code, mimetype="text/plain")
        return response if response is not None else Response()

    return wrapper