import re
from typing import Optional, Protocol

from prometheus_client import CollectorRegistry, Gauge, generate_latest

from mitigation.core.logger import logger

_INVALID_METRIC_CHARS = re.compile(r"[^a-zA-Z0-9_]")


class MetricRecorder(Protocol):
    def record(self, component: str, metric_name: str, value: float, tags: Optional[dict[str, str]] = None) -> None:
        ...


class LoggingMetricRecorder:
    def record(self, component: str, metric_name: str, value: float, tags: Optional[dict[str, str]] = None) -> None:
        logger.info("metric", component=component, metric=metric_name, value=value, tags=tags or {})


class PrometheusMetricRecorder:
    """Keeps the latest value per component/metric/tag set as a gauge in a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "mitigation"):
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace
        self._gauges: dict[str, tuple[Gauge, tuple[str, ...]]] = {}

    def _gauge(self, component: str, metric_name: str, label_names: tuple[str, ...]) -> tuple[Gauge, tuple[str, ...]]:
        name = _INVALID_METRIC_CHARS.sub("_", f"{self.namespace}_{component}_{metric_name}")
        if name not in self._gauges:
            gauge = Gauge(
                name,
                f"{metric_name} reported by {component}",
                list(label_names),
                registry=self.registry
            )
            self._gauges[name] = (gauge, label_names)
        return self._gauges[name]

    def record(self, component: str, metric_name: str, value: float, tags: Optional[dict[str, str]] = None) -> None:
        tags = {_INVALID_METRIC_CHARS.sub("_", k): str(v) for k, v in (tags or {}).items()}
        try:
            gauge, label_names = self._gauge(component, metric_name, tuple(sorted(tags)))
            if label_names:
                # label set is fixed by the first sample
                gauge.labels(**{name: tags.get(name, "") for name in label_names}).set(value)
            else:
                gauge.set(value)
        except ValueError as e:
            logger.warning("metric_record_failed", component=component, metric=metric_name, error=str(e))

    def render(self) -> bytes:
        return generate_latest(self.registry)


def record_metric(
    recorder: Optional[MetricRecorder],
    component: str,
    metric_name: str,
    value: float,
    tags: Optional[dict[str, str]] = None
) -> None:
    if recorder is None:
        return
    try:
        recorder.record(component, metric_name, value, tags)
    except Exception as e:
        logger.warning("metric_record_failed", component=component, metric=metric_name, error=str(e))
