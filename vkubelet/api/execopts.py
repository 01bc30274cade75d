"""Options shared by the exec and attach handlers."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from vkubelet.errdefs import InvalidInputError

DEFAULT_STREAM_TIMEOUT = 30.0

_TTY_PARAM = "tty"
_STDIN_PARAM = "input"
_STDOUT_PARAM = "output"
_STDERR_PARAM = "error"


@dataclass(frozen=True)
class ExecOptions:
    """Which streams an exec or attach session uses."""

    stdin: bool = False
    stdout: bool = False
    stderr: bool = False
    tty: bool = False


@dataclass(frozen=True)
class TermSize:
    """Terminal size sent by an attached client."""

    width: int
    height: int


@dataclass(frozen=True)
class StreamConfig:
    """Timeouts, in seconds, for streaming connections."""

    idle_timeout: float = DEFAULT_STREAM_TIMEOUT
    creation_timeout: float = DEFAULT_STREAM_TIMEOUT


def _flag(form: Mapping[str, Any], key: str) -> bool:
    value = form.get(key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return value == "1"


def get_exec_options(form: Mapping[str, Any]) -> ExecOptions:
    """Read stream options from request parameters; raise InvalidInputError if they conflict."""
    tty = _flag(form, _TTY_PARAM)
    stdin = _flag(form, _STDIN_PARAM)
    stdout = _flag(form, _STDOUT_PARAM)
    stderr = _flag(form, _STDERR_PARAM)
    if tty and stderr:
        raise InvalidInputError("cannot exec with tty and stderr")
    if not (stdin or stdout or stderr):
        raise InvalidInputError("you must specify at least one of stdin, stdout, stderr")
    return ExecOptions(stdin=stdin, stdout=stdout, stderr=stderr, tty=tty)


def stream_config(idle_timeout: float = 0, creation_timeout: float = 0) -> StreamConfig:
    """Build a StreamConfig; a zero timeout takes the default."""
    return StreamConfig(
        idle_timeout=idle_timeout or DEFAULT_STREAM_TIMEOUT,
        creation_timeout=creation_timeout or DEFAULT_STREAM_TIMEOUT,
    )