"""
Tests for health checks and the /health, /health/ready, /health/live endpoints.
"""
import threading
import time

import pytest

from identity_server.database import engine, make_engine
from identity_server.dependencies import get_health_monitor
from identity_server.health import (
    HealthCheckResult,
    HealthMonitor,
    HealthStatus,
    check_database,
    check_identity_server,
)
from identity_server.main import app
from identity_server.models import Base


@pytest.fixture
def override_monitor():
    def _install(monitor):
        app.dependency_overrides[get_health_monitor] = lambda: monitor

    yield _install
    app.dependency_overrides.pop(get_health_monitor, None)


def _healthy(name="stub"):
    return HealthCheckResult(name, HealthStatus.HEALTHY, "ok")


# --- checks ---


def test_database_check_healthy(db):
    result = check_database(engine)
    assert result.status is HealthStatus.HEALTHY
    assert result.data["connection"] == "healthy"
    assert result.data["pending_migrations"] is False


def test_database_check_reports_pending_schema(db):
    Base.metadata.tables["audit_log"].drop(bind=engine)
    result = check_database(engine)
    assert result.status is HealthStatus.HEALTHY
    assert result.data["pending_migrations"] is True
    assert result.data["pending_migration_count"] == 1


def test_database_check_unreachable():
    result = check_database(make_engine("sqlite:////nonexistent-dir/identity/health.db"))
    assert result.status is HealthStatus.UNHEALTHY
    assert "error" in result.data


def test_identity_server_check():
    jwks = {"keys": [{"kid": "k"}]}
    assert check_identity_server(lambda: {"issuer": "x"}, lambda: jwks).status is HealthStatus.HEALTHY
    assert check_identity_server(lambda: {}, lambda: jwks).status is HealthStatus.UNHEALTHY
    assert check_identity_server(lambda: {"issuer": "x"}, lambda: {"keys": []}).status is HealthStatus.UNHEALTHY

    def broken():
        raise RuntimeError("key store offline")

    result = check_identity_server(broken, lambda: jwks)
    assert result.status is HealthStatus.UNHEALTHY
    assert result.data["error"] == "key store offline"


# --- monitor ---


def test_monitor_aggregates_worst_status():
    monitor = HealthMonitor(
        {
            "a": _healthy,
            "b": lambda: HealthCheckResult("b", HealthStatus.DEGRADED, "slow"),
        }
    )
    report = monitor.report()
    assert report.status is HealthStatus.DEGRADED
    assert [c.name for c in report.checks] == ["a", "b"]


def test_monitor_times_out_hanging_check():
    monitor = HealthMonitor({"hang": lambda: time.sleep(2) or _healthy(), "ok": _healthy}, timeout=0.2)
    started = time.perf_counter()
    report = monitor.report()
    assert time.perf_counter() - started < 1.5
    assert report.status is HealthStatus.UNHEALTHY
    hang = next(c for c in report.checks if c.name == "hang")
    assert hang.data == {"error": "timeout"}


def test_monitor_fails_closed_on_exception_and_missing_result():
    def boom():
        raise RuntimeError("boom")

    report = HealthMonitor({"boom": boom, "none": lambda: None}).report()
    assert report.status is HealthStatus.UNHEALTHY
    assert all(c.status is HealthStatus.UNHEALTHY for c in report.checks)


def test_hung_check_does_not_starve_other_checks():
    release = threading.Event()

    def hung():
        release.wait(5)
        return _healthy("database")

    monitor = HealthMonitor({"database": hung, "identityserver": _healthy}, timeout=0.2)
    try:
        reports = [monitor.report() for _ in range(3)]
        for report in reports:
            checks = {c.name: c for c in report.checks}
            assert checks["identityserver"].status is HealthStatus.HEALTHY
            assert checks["database"].status is HealthStatus.UNHEALTHY
        assert reports[0].checks[0].data == {"error": "timeout"}
        assert reports[1].checks[0].data == {"error": "still running"}
        assert reports[2].checks[0].data == {"error": "still running"}

        release.set()
        deadline = time.perf_counter() + 2
        while True:
            report = monitor.report()
            if report.status is HealthStatus.HEALTHY or time.perf_counter() > deadline:
                break
            time.sleep(0.05)
        assert report.status is HealthStatus.HEALTHY
    finally:
        release.set()
        monitor.shutdown()


def test_monitor_reports_after_shutdown():
    monitor = HealthMonitor({"a": _healthy})
    assert monitor.report().status is HealthStatus.HEALTHY
    monitor.shutdown()
    monitor.shutdown()
    assert monitor.report().status is HealthStatus.HEALTHY
    monitor.shutdown()


# --- endpoints ---


def test_health_endpoint_healthy(client):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "Healthy"
    names = {c["name"] for c in data["checks"]}
    assert names == {"database", "identityserver"}
    for check in data["checks"]:
        assert check["status"] == "Healthy"
        assert "duration" in check and "description" in check


def test_ready_omits_checks_when_healthy(client):
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json()["status"] == "Healthy"
    assert "checks" not in r.json()


def test_unhealthy_database_fails_ready_but_not_live(client, override_monitor):
    broken = make_engine("sqlite:////nonexistent-dir/identity/health.db")
    override_monitor(HealthMonitor({"database": lambda: check_database(broken)}))

    r = client.get("/health/ready")
    assert r.status_code == 503
    data = r.json()
    assert data["status"] == "Unhealthy"
    assert data["checks"][0]["name"] == "database"
    assert data["checks"][0]["status"] == "Unhealthy"
    assert data["checks"][0]["description"].startswith("Database health check failed")

    r = client.get("/health")
    assert r.status_code == 503

    r = client.get("/health/live")
    assert r.status_code == 200
    assert r.json()["status"] == "Healthy"
    assert "checks" not in r.json()


def test_degraded_is_still_ready(client, override_monitor):
    override_monitor(HealthMonitor({"cache": lambda: HealthCheckResult("cache", HealthStatus.DEGRADED, "slow")}))
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json()["status"] == "Degraded"
