############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# query.py: Read side of the fleet service and its global lifecycle
#
############################################################

"""Fleet query service.

Serves the last published snapshot and computes routing decisions against
it. Reads never take the registry lock and never wait for a running probe
cycle; staleness is reported as snapshot age instead of an error.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fleetrouter.core.fleet_config import FleetDefinition, load_fleet_file
from fleetrouter.core.routing.router import ModelRouter
from fleetrouter.core.telemetry.aggregator import HealthAggregator
from fleetrouter.core.telemetry.models import (
    CapabilityReport,
    FleetSnapshot,
    Node,
    RoutingDecision,
    utcnow,
)
from fleetrouter.core.telemetry.prober import CapabilityProber
from fleetrouter.core.telemetry.registry import NodeRegistry
from fleetrouter.errors import UnknownNode
from fleetrouter.logging_config import get_logger
from fleetrouter.settings import Settings, get_settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class SnapshotView:
    """A snapshot together with its age when it was read."""

    snapshot: FleetSnapshot
    age_seconds: float


class FleetQueryService:
    """Query and reporting facade over the aggregator and router."""

    def __init__(
        self,
        aggregator: HealthAggregator,
        router: ModelRouter,
        registry: NodeRegistry,
    ):
        self._aggregator = aggregator
        self._router = router
        self._registry = registry

    @property
    def aggregator(self) -> HealthAggregator:
        return self._aggregator

    def _latest(self) -> FleetSnapshot:
        snapshot = self._aggregator.latest
        if snapshot is None:
            # Not initialized yet; an empty snapshot still routes to fallbacks
            snapshot = FleetSnapshot(taken_at=utcnow(), cycle=0)
        return snapshot

    def current(self, now: Optional[datetime] = None) -> SnapshotView:
        """Latest published snapshot and its age in seconds."""
        snapshot = self._latest()
        return SnapshotView(snapshot=snapshot, age_seconds=snapshot.age_seconds(now))

    def route(self, requesting_node: str, workload_hint: Optional[str] = "") -> RoutingDecision:
        """Routing decision against the latest snapshot.

        Raises:
            ValueError: if the workload hint is invalid
        """
        return self._router.route(self._latest(), requesting_node, workload_hint)

    async def deregister(self, name: str) -> None:
        """Remove a node and republish."""
        if not await self._aggregator.remove_node(name):
            raise UnknownNode(name)

    async def report_capability(self, name: str, report: CapabilityReport) -> Node:
        """Apply a pushed capability report and republish."""
        node = await self._registry.apply_report(name, report)
        await self._aggregator.refresh_snapshot()
        return node


def build_service(
    definition: FleetDefinition,
    settings: Optional[Settings] = None,
    prober: Optional[CapabilityProber] = None,
) -> FleetQueryService:
    """Wire registry, prober, aggregator and router for a fleet definition."""
    settings = settings or get_settings()
    registry = NodeRegistry(down_threshold=settings.down_threshold)
    prober = prober or CapabilityProber(settings=settings)
    aggregator = HealthAggregator(registry, prober, definition, settings)
    router = ModelRouter(
        lan_networks=definition.lan_networks,
        allow_metered_default=settings.allow_metered_default,
    )
    return FleetQueryService(aggregator, router, registry)


# Global service instance
_service: Optional[FleetQueryService] = None


def get_query_service() -> FleetQueryService:
    """Get the global query service (init_fleet must have run)."""
    if _service is None:
        raise RuntimeError("fleet service is not initialized")
    return _service


def set_query_service(service: Optional[FleetQueryService]) -> None:
    global _service
    _service = service


async def init_fleet(definition: Optional[FleetDefinition] = None) -> FleetQueryService:
    """Load the fleet, publish the initial snapshot and start polling."""
    global _service
    settings = get_settings()
    if definition is None:
        definition = load_fleet_file(settings.fleet_file, settings)

    service = build_service(definition, settings)
    await service.aggregator.start()
    _service = service
    return service


async def shutdown_fleet() -> None:
    """Stop the global aggregator."""
    global _service
    if _service:
        await _service.aggregator.stop()
        _service = None
