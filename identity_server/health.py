"""
Health checks: credential store connectivity and token-issuance readiness.

Each check returns a HealthCheckResult instead of raising. The monitor runs checks
concurrently with a bounded timeout; a timeout or an unexpected fault becomes Unhealthy.
"""
import enum
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.engine import Engine

from identity_server.database import pending_schema_changes, ping

logger = logging.getLogger(__name__)


class HealthStatus(enum.IntEnum):
    # Ordered by severity so the aggregate is max()
    HEALTHY = 0
    DEGRADED = 1
    UNHEALTHY = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()


@dataclass
class HealthCheckResult:
    name: str
    status: HealthStatus
    description: str
    duration: float = 0.0  # milliseconds
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.label,
            "description": self.description,
            "duration": self.duration,
            "data": self.data,
        }


@dataclass
class HealthReport:
    status: HealthStatus
    checks: list[HealthCheckResult]
    timestamp: datetime

    def to_dict(self, include_checks: bool = True) -> dict:
        body = {"status": self.status.label, "timestamp": self.timestamp.isoformat()}
        if include_checks:
            body["checks"] = [c.to_dict() for c in self.checks]
        return body


HealthCheck = Callable[[], HealthCheckResult]


def check_database(engine: Engine) -> HealthCheckResult:
    """Connectivity probe; pending schema upgrades are reported but do not fail the check."""
    dialect = engine.dialect.name
    try:
        ping(engine)
        pending = pending_schema_changes(engine)
    except Exception as e:
        logger.exception("Database health check failed")
        return HealthCheckResult(
            "database",
            HealthStatus.UNHEALTHY,
            f"Database health check failed: {e}",
            data={"database": dialect, "error": str(e)},
        )
    data = {"database": dialect, "connection": "healthy", "pending_migrations": bool(pending)}
    if pending:
        data["pending_migration_count"] = len(pending)
        logger.warning("Database is healthy but has %d pending schema changes: %s", len(pending), pending)
    return HealthCheckResult("database", HealthStatus.HEALTHY, "Database is healthy", data=data)


def check_identity_server(discovery: Callable[[], dict], jwks: Callable[[], dict]) -> HealthCheckResult:
    """Materialize discovery metadata and signing keys the way /.well-known would."""
    try:
        document = discovery()
        keys = jwks()
    except Exception as e:
        logger.exception("Identity server health check failed")
        return HealthCheckResult(
            "identityserver",
            HealthStatus.UNHEALTHY,
            "Identity server health check failed",
            data={"identity_server": "unhealthy", "error": str(e)},
        )
    if not document:
        return HealthCheckResult(
            "identityserver",
            HealthStatus.UNHEALTHY,
            "Discovery document is empty",
            data={"identity_server": "unhealthy"},
        )
    if not keys.get("keys"):
        return HealthCheckResult(
            "identityserver",
            HealthStatus.UNHEALTHY,
            "No signing keys available",
            data={"identity_server": "unhealthy"},
        )
    return HealthCheckResult(
        "identityserver",
        HealthStatus.HEALTHY,
        "Identity server is healthy",
        data={"identity_server": "operational", "discovery_endpoint": "healthy", "signing_keys": len(keys["keys"])},
    )


class HealthMonitor:
    """
    Runs checks concurrently with a bounded timeout. A check that is still running from an
    earlier report is not submitted again; it is reported Unhealthy until it returns, so a
    hung dependency holds at most one worker and cannot starve the other checks.
    """

    def __init__(self, checks: dict[str, HealthCheck], timeout: float = 5.0):
        self.checks = checks
        self.timeout = timeout
        self._executor: ThreadPoolExecutor | None = None
        self._in_flight: dict[str, Future] = {}
        self._lock = threading.Lock()

    def _submit(self) -> dict[str, Future | None]:
        """Future per check name; None where the previous run has not finished."""
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=max(1, len(self.checks)), thread_name_prefix="health")
            futures: dict[str, Future | None] = {}
            for name, check in self.checks.items():
                previous = self._in_flight.get(name)
                if previous is not None and not previous.done():
                    futures[name] = None
                    continue
                future = self._executor.submit(_timed, check)
                self._in_flight[name] = future
                futures[name] = future
            return futures

    def _collect(self, name: str, future: Future | None, started: float) -> HealthCheckResult:
        if future is None:
            logger.error("Health check %s is still running from a previous report", name)
            return HealthCheckResult(
                name,
                HealthStatus.UNHEALTHY,
                "Health check still running from a previous report",
                data={"error": "still running"},
            )
        remaining = max(0.0, self.timeout - (time.perf_counter() - started))
        try:
            result = future.result(timeout=remaining)
        except FutureTimeoutError:
            future.cancel()
            logger.error("Health check %s timed out after %.1fs", name, self.timeout)
            return HealthCheckResult(
                name,
                HealthStatus.UNHEALTHY,
                f"Health check timed out after {self.timeout}s",
                duration=self.timeout * 1000,
                data={"error": "timeout"},
            )
        except Exception as e:
            logger.exception("Health check %s raised", name)
            return HealthCheckResult(name, HealthStatus.UNHEALTHY, "Health check failed", data={"error": str(e)})
        if not isinstance(result, HealthCheckResult) or not isinstance(result.status, HealthStatus):
            # Indeterminate: fail closed
            return HealthCheckResult(name, HealthStatus.UNHEALTHY, "Health check returned no result")
        result.name = name
        return result

    def run(self) -> list[HealthCheckResult]:
        started = time.perf_counter()
        futures = self._submit()
        return [self._collect(name, future, started) for name, future in futures.items()]

    def report(self) -> HealthReport:
        results = self.run()
        status = max((r.status for r in results), default=HealthStatus.HEALTHY)
        return HealthReport(status=status, checks=results, timestamp=datetime.now(timezone.utc))

    def shutdown(self) -> None:
        """Release the worker threads; a later report starts a fresh pool."""
        with self._lock:
            executor, self._executor = self._executor, None
            self._in_flight.clear()
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)


def _timed(check: HealthCheck) -> HealthCheckResult:
    started = time.perf_counter()
    result = check()
    if isinstance(result, HealthCheckResult):
        result.duration = round((time.perf_counter() - started) * 1000, 3)
    return result
