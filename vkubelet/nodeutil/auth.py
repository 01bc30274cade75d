"""Authentication and authorization of requests to the node's HTTP API."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from http import HTTPStatus

from werkzeug.wrappers import Request, Response

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "system:anonymous"
UNAUTHENTICATED_GROUP = "system:unauthenticated"

_VERBS = {
    "POST": "create",
    "GET": "get",
    "PUT": "update",
    "PATCH": "patch",
    "DELETE": "delete",
}


class Decision(enum.Enum):
    """Outcome of an authorization check."""

    DENY = 0
    ALLOW = 1
    NO_OPINION = 2


@dataclass(frozen=True)
class UserInfo:
    """An authenticated user."""

    name: str
    uid: str = ""
    groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class RequestAttributes:
    """What a request asks to do, as seen by an authorizer."""

    user: UserInfo | None
    verb: str
    namespace: str = ""
    api_group: str = ""
    api_version: str = ""
    resource: str = ""
    name: str = ""
    resource_request: bool = False
    path: str = ""
    subresource: str = ""


def get_api_verb(method: str) -> str:
    """Map an HTTP method to an API verb; unknown methods give an empty verb."""
    return _VERBS.get(method, "")


def is_subpath(subpath: str, path: str) -> bool:
    """Return True if subpath is path or lies below it."""
    return subpath == path or (subpath.startswith(path) and subpath[len(path)] == "/")


def get_subresource(path: str) -> str:
    """Name the node subresource a request path addresses."""
    if is_subpath(path, "/stats"):
        return "stats"
    if is_subpath(path, "/metrics"):
        return "metrics"
    if is_subpath(path, "/logs"):
        # "log", matching the other log subresources such as pods/log.
        return "log"
    return "proxy"


@dataclass(frozen=True)
class NodeRequestAttr:
    """Describes every request as an access to the named node."""

    node_name: str = ""

    def get_request_attributes(self, user: UserInfo | None, request: Request) -> RequestAttributes:
        return RequestAttributes(
            user=user,
            verb=get_api_verb(request.method),
            namespace="",
            api_group="",
            api_version="v1",
            resource="nodes",
            name=self.node_name,
            resource_request=True,
            path=request.path,
            subresource=get_subresource(request.path),
        )


@dataclass(frozen=True)
class Auth:
    """The three steps of request auth.

    ``authenticate(request)`` returns ``(user, ok)``; ``attributes(user, request)``
    describes the request; ``authorize(attributes)`` returns ``(decision, reason)``.
    """

    authenticate: Callable[[Request], tuple[UserInfo | None, bool]]
    attributes: Callable[[UserInfo | None, Request], RequestAttributes] = field(
        default=NodeRequestAttr().get_request_attributes
    )
    authorize: Callable[[RequestAttributes], tuple[Decision, str]] = field(
        default=lambda attrs: (Decision.ALLOW, "")
    )


def _anonymous(request: Request) -> tuple[UserInfo, bool]:
    return UserInfo(name=ANONYMOUS_USER, groups=(UNAUTHENTICATED_GROUP,)), True


def no_auth() -> Auth:
    """An Auth that lets anonymous users do anything."""
    return Auth(
        authenticate=_anonymous,
        attributes=NodeRequestAttr().get_request_attributes,
        authorize=lambda attrs: (Decision.ALLOW, ""),
    )


def _http_error(message: str, status: int) -> Response:
    response = Response(message + "\n", status=status, mimetype="text/plain")
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def with_auth(auth: Auth, handler: Callable[[Request], Response]) -> Callable[[Request], Response]:
    """Wrap handler so that only authenticated and authorized requests reach it."""

    def guarded(request: Request) -> Response:
        try:
            user, ok = auth.authenticate(request)
        except Exception as err:  # noqa: BLE001 - any failure means the request is not authenticated
            logger.error("Authorization error: %s", err)
            return _http_error("Unauthorized", HTTPStatus.UNAUTHORIZED)
        if not ok:
            logger.error("Authorization error: request not authenticated")
            return _http_error("Unauthorized", HTTPStatus.UNAUTHORIZED)

        logger.debug("authenticated user-name=%s user-id=%s", user.name if user else "", user.uid if user else "")
        attrs = auth.attributes(user, request)
        try:
            decision, _reason = auth.authorize(attrs)
        except Exception as err:  # noqa: BLE001 - reported to the client as a server error
            logger.error("Authorization error: %s", err)
            return _http_error(str(err), HTTPStatus.INTERNAL_SERVER_ERROR)
        if decision is not Decision.ALLOW:
            return _http_error("Forbidden", HTTPStatus.FORBIDDEN)
        return handler(request)

    return guarded