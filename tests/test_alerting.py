import httpx
from structlog.testing import capture_logs
from mitigation.services.alerting import AlertDispatcher, AlertLevel, LoggingAlertEmitter, WebhookAlertEmitter
from mitigation.services.metrics import LoggingMetricRecorder, PrometheusMetricRecorder, record_metric
from mitigation.core.clock import ManualClock
from mitigation.core.database import Database
from conftest import RecordingEmitter, make_settings


class BrokenEmitter:
    def emit(self, component, level, dedup_key, message):
        raise ConnectionError("webhook down")


class BrokenRecorder:
    def record(self, component, metric_name, value, tags=None):
        raise RuntimeError("collector down")


def test_duplicate_keys_are_suppressed_within_window():
    emitter = RecordingEmitter()
    dispatcher = AlertDispatcher(emitter, dedup_window_seconds=3600)

    assert dispatcher.emit("ddos_detector", AlertLevel.CRITICAL, "ddos:global:e1", "attack") is True
    assert dispatcher.emit("ddos_detector", AlertLevel.CRITICAL, "ddos:global:e1", "attack") is False
    assert dispatcher.emit("ddos_detector", AlertLevel.CRITICAL, "ddos:global:e2", "attack") is True
    assert [alert[2] for alert in emitter.alerts] == ["ddos:global:e1", "ddos:global:e2"]


def test_zero_window_disables_dedup():
    emitter = RecordingEmitter()
    dispatcher = AlertDispatcher(emitter, dedup_window_seconds=0)
    dispatcher.emit("rate_limiter", AlertLevel.WARNING, "k", "m")
    dispatcher.emit("rate_limiter", AlertLevel.WARNING, "k", "m")
    assert len(emitter.alerts) == 2


def test_emitter_failures_are_contained():
    dispatcher = AlertDispatcher(BrokenEmitter())
    assert dispatcher.emit("rate_limiter", AlertLevel.WARNING, "k", "m") is False


def test_emitter_failure_does_not_change_decisions(clock):
    from conftest import make_engine

    engine = make_engine(clock=clock, emitter=BrokenEmitter())
    for _ in range(13):
        engine.check_rate_limit("203.0.113.1", window_seconds=60, max_requests=10, burst_allowance=3)
    assert engine.check_rate_limit("203.0.113.1", window_seconds=60, max_requests=10, burst_allowance=3).allowed is False


def test_prometheus_recorder_keeps_latest_value():
    recorder = PrometheusMetricRecorder()
    recorder.record("rate_limiter", "degraded_mode", 1, {"failure_policy": "fail_open"})
    recorder.record("ddos_detector", "window_requests", 42, {"scope": "global"})
    recorder.record("ddos_detector", "window_requests", 7, {"scope": "global"})

    registry = recorder.registry
    assert registry.get_sample_value("mitigation_rate_limiter_degraded_mode", {"failure_policy": "fail_open"}) == 1.0
    assert registry.get_sample_value("mitigation_ddos_detector_window_requests", {"scope": "global"}) == 7.0
    assert b"mitigation_ddos_detector_window_requests" in recorder.render()


def test_metric_failures_are_contained():
    record_metric(BrokenRecorder(), "rate_limiter", "requests_denied", 1)
    record_metric(None, "rate_limiter", "requests_denied", 1)


def test_webhook_emitter_posts_alert(monkeypatch):
    sent = []

    def fake_post(url, json, timeout):
        sent.append((url, json))
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    WebhookAlertEmitter("http://alerts.local/hook", timeout=1.0).emit(
        "ddos_detector", AlertLevel.CRITICAL, "ddos:global:e1", "attack"
    )

    assert sent == [("http://alerts.local/hook", {
        "component": "ddos_detector",
        "level": "critical",
        "dedup_key": "ddos:global:e1",
        "message": "attack"
    })]


def test_webhook_errors_are_contained_by_dispatcher(monkeypatch):
    def fake_post(url, json, timeout):
        return httpx.Response(500, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    dispatcher = AlertDispatcher(WebhookAlertEmitter("http://alerts.local/hook"))
    assert dispatcher.emit("rate_limiter", AlertLevel.WARNING, "k", "m") is False


def test_logging_backends_write_structured_events():
    with capture_logs() as logs:
        LoggingAlertEmitter().emit("abuse_detector", AlertLevel.CRITICAL, "abuse:1.2.3.4:critical", "abusive")
        LoggingMetricRecorder().record("abuse_detector", "abuse_auto_blocks", 1, {"severity": "critical"})

    assert logs[0]["event"] == "alert"
    assert logs[0]["log_level"] == "error"
    assert logs[1]["event"] == "metric"
    assert logs[1]["tags"] == {"severity": "critical"}


def test_expired_keys_are_pruned_from_memory():
    now = [0.0]
    dispatcher = AlertDispatcher(RecordingEmitter(), dedup_window_seconds=60, timer=lambda: now[0])
    for n in range(500):
        dispatcher.emit("rate_limiter", AlertLevel.WARNING, f"rate_limit:10.0.{n // 256}.{n % 256}:ip", "m")

    now[0] += 3600
    assert dispatcher.emit("rate_limiter", AlertLevel.WARNING, "rate_limit:10.9.9.9:ip", "m") is True
    assert list(dispatcher._last_sent) == ["rate_limit:10.9.9.9:ip"]


def test_dedup_is_shared_through_the_store(tmp_path):
    settings = make_settings(database_url=f"sqlite:///{tmp_path / 'alerts.db'}")
    database = Database(settings)
    database.create_all()
    clock = ManualClock()
    first, second = RecordingEmitter(), RecordingEmitter()
    process_a = AlertDispatcher(first, 3600, database=database, clock=clock)
    process_b = AlertDispatcher(second, 3600, database=Database(settings), clock=clock)

    assert process_a.emit("ddos_detector", AlertLevel.CRITICAL, "ddos:global:e1", "attack") is True
    assert process_b.emit("ddos_detector", AlertLevel.CRITICAL, "ddos:global:e1", "attack") is False

    clock.advance(3600)
    assert process_b.emit("ddos_detector", AlertLevel.CRITICAL, "ddos:global:e1", "attack") is True
    assert len(first.alerts) == 1
    assert len(second.alerts) == 1


def test_store_outage_falls_back_to_memory_dedup():
    settings = make_settings(database_url="sqlite:////nonexistent-directory/alerts.db")
    emitter = RecordingEmitter()
    dispatcher = AlertDispatcher(emitter, 3600, database=Database(settings), clock=ManualClock())

    assert dispatcher.emit("rate_limiter", AlertLevel.WARNING, "k", "m") is True
    assert dispatcher.emit("rate_limiter", AlertLevel.WARNING, "k", "m") is False
    assert len(emitter.alerts) == 1
