import pytest
from mitigation.config import load_settings
from mitigation.core.clock import ManualClock
from mitigation.core.database import Database
from mitigation.engine import MitigationEngine
from mitigation.services.alerting import AlertLevel


class RecordingEmitter:
    def __init__(self):
        self.alerts = []

    def emit(self, component, level, dedup_key, message):
        self.alerts.append((component, level, dedup_key, message))

    def of_level(self, level: AlertLevel):
        return [alert for alert in self.alerts if alert[1] == level]


class RecordingMetrics:
    def __init__(self):
        self.samples = []

    def record(self, component, metric_name, value, tags=None):
        self.samples.append((component, metric_name, value, tags or {}))

    def named(self, metric_name):
        return [sample for sample in self.samples if sample[1] == metric_name]


def make_settings(**overrides):
    values = dict(
        database_url="sqlite://",
        redis_url=None,
        ddos_soft_threshold=20,
        ddos_hard_threshold=40,
        ddos_consecutive_windows=2,
        ddos_cooldown_seconds=60,
        ddos_offender_min_requests=15,
        ddos_window_seconds=60,
    )
    values.update(overrides)
    return load_settings(**values)


def make_engine(settings=None, clock=None, emitter=None, metrics=None, geo_filter=None):
    settings = settings or make_settings()
    database = Database(settings)
    database.create_all()
    return MitigationEngine(
        settings,
        database=database,
        clock=clock or ManualClock(),
        emitter=emitter or RecordingEmitter(),
        metrics=metrics or RecordingMetrics(),
        geo_filter=geo_filter
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def engine(settings, clock, emitter, metrics):
    return make_engine(settings, clock, emitter, metrics)
