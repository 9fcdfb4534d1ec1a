"""Health endpoints for the order-spine service.

Two dependencies decide whether the service can take orders: the order
store must answer, and the dispatch engine must be running.  Each is
described by a :class:`HealthCheck`; ``create_health_router()`` turns a
list of checks into three probe endpoints:

- ``GET {prefix}``        full report, 503 if a required check fails
- ``GET {prefix}/ready``  503 unless every check passes
- ``GET {prefix}/live``   always 200 while the process is up

A check function returns ``True``/``False`` or a ``dict`` of details
(reported under ``checks.<name>.details``).  Raising, returning
``False``, or exceeding ``timeout_s`` marks the check unhealthy.

Example::

    router = create_health_router(
        "order-spine",
        "1.0.0",
        checks=dispatch_checks(engine, store),
        prefix="/api/health",
    )
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from order_spine.dispatch.engine import DispatchEngine
    from order_spine.dispatch.store import OrderStore

_START_TIME = time.monotonic()

HealthStatus = Literal["healthy", "degraded", "unhealthy"]
CheckFn = Callable[[], Awaitable["bool | dict[str, Any]"]]


class CheckResult(BaseModel):
    status: HealthStatus
    latency_ms: float | None = None
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Body of ``GET /health`` and ``GET /health/ready``."""

    status: HealthStatus = "healthy"
    service: str = ""
    version: str = ""
    uptime_s: float = 0.0
    timestamp: str = ""
    checks: dict[str, CheckResult] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    status: str = "alive"


@dataclass
class HealthCheck:
    """One dependency probe.

    ``required`` checks make the service unhealthy when they fail;
    optional ones only degrade it.
    """

    name: str
    check_fn: CheckFn
    required: bool = True
    timeout_s: float = 5.0

    async def run(self) -> CheckResult:
        start = time.monotonic()
        try:
            outcome = await asyncio.wait_for(self.check_fn(), timeout=self.timeout_s)
        except TimeoutError:
            return CheckResult(status="unhealthy", error="timeout")
        except Exception as exc:  # noqa: BLE001
            return CheckResult(status="unhealthy", latency_ms=_since(start), error=str(exc)[:200])

        if outcome is False:
            return CheckResult(status="unhealthy", latency_ms=_since(start), error="check returned false")
        details = outcome if isinstance(outcome, dict) else {}
        return CheckResult(status="healthy", latency_ms=_since(start), details=details)


def _since(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


def dispatch_checks(engine: DispatchEngine, store: OrderStore) -> list[HealthCheck]:
    """Standard checks for a process that owns an engine and a store."""

    async def engine_check() -> bool | dict[str, Any]:
        if not engine.is_running:
            raise RuntimeError(f"dispatch engine is {engine.state.value}")
        metrics = engine.metrics()
        return {"queued": metrics.queued, "in_flight": metrics.in_flight, "retrying": metrics.retrying}

    return [
        HealthCheck(name="store", check_fn=store.ping),
        HealthCheck(name="engine", check_fn=engine_check),
    ]


def overall_status(results: dict[str, CheckResult], checks: list[HealthCheck]) -> HealthStatus:
    required = {hc.name for hc in checks if hc.required}
    failed = {name for name, result in results.items() if result.status != "healthy"}
    if failed & required:
        return "unhealthy"
    if failed:
        return "degraded"
    return "healthy"


def create_health_router(
    service_name: str,
    version: str,
    checks: list[HealthCheck] | None = None,
    prefix: str = "/health",
):
    """Build an ``APIRouter`` with health, readiness and liveness probes."""
    from fastapi import APIRouter  # noqa: PLC0415
    from fastapi.responses import JSONResponse  # noqa: PLC0415

    router = APIRouter(tags=["health"])
    _checks: list[HealthCheck] = checks or []

    async def _report() -> HealthResponse:
        results = await asyncio.gather(*(hc.run() for hc in _checks))
        by_name = {hc.name: result for hc, result in zip(_checks, results, strict=True)}
        return HealthResponse(
            status=overall_status(by_name, _checks),
            service=service_name,
            version=version,
            uptime_s=round(time.monotonic() - _START_TIME, 1),
            timestamp=datetime.now(UTC).isoformat(),
            checks=by_name,
        )

    @router.get(prefix, response_model=HealthResponse)
    async def health() -> JSONResponse:
        body = await _report()
        code = 503 if body.status == "unhealthy" else 200
        return JSONResponse(content=body.model_dump(), status_code=code)

    @router.get(f"{prefix}/ready", response_model=HealthResponse)
    async def readiness() -> JSONResponse:
        body = await _report()
        code = 200 if body.status == "healthy" else 503
        return JSONResponse(content=body.model_dump(), status_code=code)

    @router.get(f"{prefix}/live", response_model=LivenessResponse)
    async def liveness() -> LivenessResponse:
        return LivenessResponse()

    return router
