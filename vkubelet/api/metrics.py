"""Prometheus text exposition of metric families, and the /metrics/resource handler."""

from __future__ import annotations

import enum
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from http import HTTPStatus

from werkzeug.wrappers import Request, Response

from vkubelet.api.stats import is_cancelled
from vkubelet.errdefs import handle_error

PROMETHEUS_TEXT_FORMAT_CONTENT_TYPE = "text/plain; version=0.0.4"


class MetricType(enum.Enum):
    """Kind of a metric family, named as in the text format."""

    COUNTER = "counter"
    GAUGE = "gauge"
    SUMMARY = "summary"
    UNTYPED = "untyped"
    HISTOGRAM = "histogram"


@dataclass
class Metric:
    """One labelled sample, or a summary or histogram."""

    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    timestamp_ms: int | None = None
    quantiles: dict[float, float] = field(default_factory=dict)
    buckets: dict[float, int] = field(default_factory=dict)
    sample_count: int = 0
    sample_sum: float = 0.0


@dataclass
class MetricFamily:
    """A named group of metrics of one type."""

    name: str
    type: MetricType = MetricType.COUNTER
    help: str | None = None
    metrics: list[Metric] = field(default_factory=list)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    parts = Decimal(repr(abs(float(value)))).normalize().as_tuple()
    digits = "".join(str(d) for d in parts.digits)
    point = len(digits) + parts.exponent
    exponent = point - 1
    if exponent < -4 or exponent >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{sign}{mantissa}e{'+' if exponent >= 0 else '-'}{abs(exponent):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return sign + digits + "0" * (point - len(digits))
    return f"{sign}{digits[:point]}.{digits[point:]}"


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _sample(name: str, metric: Metric, value: str, extra: tuple[str, str] | None = None) -> str:
    labels = list(metric.labels.items())
    if extra is not None:
        labels.append(extra)
    label_text = ""
    if labels:
        label_text = "{" + ",".join(f'{key}="{_escape_label(val)}"' for key, val in labels) + "}"
    line = f"{name}{label_text} {value}"
    if metric.timestamp_ms is not None:
        line += f" {metric.timestamp_ms}"
    return line


def _encode_family(family: MetricFamily) -> list[str]:
    if not family.name:
        raise ValueError(f"MetricFamily has no name: {family!r}")
    if not family.metrics:
        raise ValueError(f"MetricFamily has no metrics: {family!r}")
    name = family.name
    lines = []
    if family.help is not None:
        lines.append(f"# HELP {name} {_escape_help(family.help)}")
    lines.append(f"# TYPE {name} {family.type.value}")
    for metric in family.metrics:
        if family.type is MetricType.SUMMARY:
            lines.extend(
                _sample(name, metric, _format_float(value), ("quantile", _format_float(quantile)))
                for quantile, value in metric.quantiles.items()
            )
        elif family.type is MetricType.HISTOGRAM:
            lines.extend(
                _sample(f"{name}_bucket", metric, str(count), ("le", _format_float(bound)))
                for bound, count in metric.buckets.items()
            )
            if not any(math.isinf(bound) and bound > 0 for bound in metric.buckets):
                lines.append(_sample(f"{name}_bucket", metric, str(metric.sample_count), ("le", "+Inf")))
        else:
            lines.append(_sample(name, metric, _format_float(metric.value)))
            continue
        lines.append(_sample(f"{name}_sum", metric, _format_float(metric.sample_sum)))
        lines.append(_sample(f"{name}_count", metric, str(metric.sample_count)))
    return lines


def encode_text(families: Iterable[MetricFamily]) -> str:
    """Render metric families in the Prometheus text format; raise ValueError on invalid input."""
    return "".join(line + "\n" for family in families for line in _encode_family(family))


def _not_implemented(request: Request) -> Response:
    return Response("501 not implemented\n", status=HTTPStatus.NOT_IMPLEMENTED, mimetype="text/plain")


def handle_pod_metrics_resource(
    handler: Callable[[], Iterable[MetricFamily]] | None,
) -> Callable[[Request], Response]:
    """Make a request handler serving the provider's metrics in the Prometheus text format."""
    if handler is None:
        return _not_implemented

    @handle_error
    def serve(request: Request) -> Response:
        try:
            families = handler()
        except Exception as err:
            if is_cancelled(err):
                raise
            raise RuntimeError(f"error getting status from provider: {err}") from err
        try:
            body = encode_text(families)
        except ValueError as err:
            raise RuntimeError(f"could not convert metrics to prometheus text format: {err}") from err
        response = Response(body)
        response.headers["Content-Type"] = PROMETHEUS_TEXT_FORMAT_CONTENT_TYPE
        return response

    return serve