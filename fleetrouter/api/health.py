############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# health.py: Health check and Prometheus metrics endpoints
#
############################################################

"""Health check and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

from fleetrouter.core.query import get_query_service
from fleetrouter.core.telemetry.models import BackendKind, HealthState
from fleetrouter.settings import get_settings

router = APIRouter(tags=["health"])

# Prometheus metrics
ROUTE_DECISIONS = Counter(
    "fleetrouter_route_decisions",
    "Routing decisions served by the API",
    ["reason"],
)
FLEET_NODES = Gauge(
    "fleetrouter_nodes",
    "Number of fleet nodes by health state",
    ["health"],
)
FLEET_BACKENDS = Gauge(
    "fleetrouter_backends",
    "Number of backends in the latest snapshot by kind",
    ["kind"],
)
SNAPSHOT_AGE = Gauge(
    "fleetrouter_snapshot_age_seconds",
    "Age of the latest published snapshot",
)
SNAPSHOT_CYCLE = Gauge(
    "fleetrouter_snapshot_cycle",
    "Probe cycle number of the latest snapshot",
)
SNAPSHOT_COMPLETE = Gauge(
    "fleetrouter_snapshot_complete",
    "1 if the latest snapshot resolved every node",
)
CYCLE_DURATION = Gauge(
    "fleetrouter_last_cycle_seconds",
    "Duration of the last probe cycle",
)
NODE_VRAM = Gauge(
    "fleetrouter_node_vram_gb",
    "VRAM counted for capacity per node",
    ["node"],
)


@router.get("/healthz")
async def liveness_probe() -> Dict[str, str]:
    """
    Liveness probe - checks if the application is running.

    Returns 200 if the application is alive.
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_probe():
    """
    Readiness probe - ready once a snapshot has been published.

    Checks:
    - Aggregator is running
    - A snapshot exists
    """
    checks = {
        "aggregator": False,
        "snapshot": False,
    }

    try:
        service = get_query_service()
        checks["aggregator"] = service.aggregator.running
        checks["snapshot"] = service.aggregator.latest is not None
    except RuntimeError:
        pass

    all_ready = all(checks.values())
    content: Dict[str, Any] = {
        "status": "ready" if all_ready else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if all_ready else 503, content=content)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """
    Prometheus metrics endpoint.

    Fleet gauges are refreshed from the latest snapshot at scrape time.
    """
    if get_settings().metrics_enabled:
        try:
            service = get_query_service()
        except RuntimeError:
            service = None

        if service is not None:
            view = service.current()
            snapshot = view.snapshot
            for state in HealthState:
                FLEET_NODES.labels(health=state.value).set(
                    sum(1 for n in snapshot.nodes if n.health == state)
                )
            for kind in BackendKind:
                FLEET_BACKENDS.labels(kind=kind.value).set(
                    sum(1 for b in snapshot.backends if b.kind == kind)
                )
            NODE_VRAM.clear()
            for node in snapshot.nodes:
                NODE_VRAM.labels(node=node.name).set(node.capabilities.usable_vram_gb)
            SNAPSHOT_AGE.set(view.age_seconds)
            SNAPSHOT_CYCLE.set(snapshot.cycle)
            SNAPSHOT_COMPLETE.set(1 if snapshot.complete else 0)
            if service.aggregator.last_cycle_seconds is not None:
                CYCLE_DURATION.set(service.aggregator.last_cycle_seconds)

    metrics = generate_latest()
    return Response(content=metrics, media_type=CONTENT_TYPE_LATEST)


@router.get("/status")
async def service_status() -> Dict[str, Any]:
    """Short service summary."""
    settings = get_settings()
    summary: Dict[str, Any] = {"nodes": 0, "up": 0, "down": 0}
    try:
        view = get_query_service().current()
        summary = {
            "nodes": len(view.snapshot.nodes),
            "up": view.snapshot.nodes_up,
            "down": view.snapshot.nodes_down,
            "cycle": view.snapshot.cycle,
            "ageSeconds": round(view.age_seconds, 3),
        }
    except RuntimeError:
        pass

    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "fleet": summary,
    }
