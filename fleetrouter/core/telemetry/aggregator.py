############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# aggregator.py: Periodic probe cycle and snapshot publication
#
############################################################

"""Health aggregator.

Drives the probe cycle::

    Idle -> Probing -> Aggregating -> Published -> Idle

Cycles never overlap. Each cycle probes every registered node with a
bounded number of probes in flight, merges the results into the registry
and publishes a new immutable ``FleetSnapshot``. A cycle that runs past
its deadline cancels the probes still in flight; those nodes keep their
previous state and the snapshot is published as incomplete.
"""

import asyncio
import time
from enum import Enum
from typing import Dict, List, Optional

from fleetrouter.core.fleet_config import FleetDefinition
from fleetrouter.core.routing.catalog import build_backends
from fleetrouter.core.telemetry.models import FleetSnapshot, Node, ProbeResult, utcnow
from fleetrouter.core.telemetry.prober import CapabilityProber
from fleetrouter.core.telemetry.registry import NodeRegistry
from fleetrouter.logging_config import get_logger
from fleetrouter.settings import Settings, get_settings

logger = get_logger(__name__)


class CycleState(str, Enum):
    """Aggregator cycle state."""
    IDLE = "idle"
    PROBING = "probing"
    AGGREGATING = "aggregating"
    PUBLISHED = "published"


class HealthAggregator:
    """
    Periodically probes the fleet and publishes snapshots.

    The published snapshot is a single reference swapped atomically;
    readers use ``latest`` and never wait on a running cycle.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        prober: CapabilityProber,
        definition: Optional[FleetDefinition] = None,
        settings: Optional[Settings] = None,
    ):
        self._settings = settings or get_settings()
        self._registry = registry
        self._prober = prober
        self._definition = definition or FleetDefinition()

        self._state = CycleState.IDLE
        self._cycle = 0
        self._snapshot: Optional[FleetSnapshot] = None
        self._last_cycle_seconds: Optional[float] = None

        self._cycle_lock = asyncio.Lock()
        self._publish_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self._settings.max_in_flight_probes)
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def latest(self) -> Optional[FleetSnapshot]:
        """Last published snapshot."""
        return self._snapshot

    @property
    def last_cycle_seconds(self) -> Optional[float]:
        return self._last_cycle_seconds

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def initialize(self) -> FleetSnapshot:
        """Register configured nodes and publish the initial snapshot."""
        for node in self._definition.nodes:
            await self._registry.register(node)
        return await self.refresh_snapshot()

    async def start(self) -> None:
        """Publish the initial snapshot and begin polling."""
        if self._snapshot is None:
            await self.initialize()
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            "aggregator_started",
            nodes=len(self._snapshot.nodes),
            interval=self._settings.poll_interval,
            deadline=self._settings.effective_cycle_deadline,
        )

    async def stop(self) -> None:
        """Stop polling and release probe clients."""
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        await self._prober.close()
        logger.info("aggregator_stopped", cycles=self._cycle)

    async def _poll_loop(self) -> None:
        """Run a cycle, then sleep for the rest of the interval."""
        while True:
            try:
                started = time.monotonic()
                await self.run_cycle()
                elapsed = time.monotonic() - started
                await asyncio.sleep(max(0.0, self._settings.poll_interval - elapsed))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("poll_loop_error", error=str(e))
                await asyncio.sleep(self._settings.poll_interval)

    async def _probe_one(self, node: Node) -> ProbeResult:
        async with self._semaphore:
            return await self._prober.probe(node)

    async def run_cycle(self, deadline: Optional[float] = None) -> FleetSnapshot:
        """
        Run one probe cycle and publish its snapshot.

        Args:
            deadline: Seconds the cycle may take before in-flight probes are
                cancelled (defaults to the configured cycle deadline)

        Returns:
            The published snapshot
        """
        deadline = deadline if deadline is not None else self._settings.effective_cycle_deadline

        async with self._cycle_lock:
            started = time.monotonic()
            self._state = CycleState.PROBING
            try:
                nodes = await self._registry.snapshot()
                tasks: Dict[asyncio.Task, Node] = {
                    asyncio.create_task(self._probe_one(node)): node for node in nodes
                }

                done, pending = set(), set()
                if tasks:
                    try:
                        done, pending = await asyncio.wait(tasks, timeout=deadline)
                    except asyncio.CancelledError:
                        for task in tasks:
                            task.cancel()
                        raise

                unresolved: List[str] = sorted(tasks[t].name for t in pending)
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                    logger.warning(
                        "cycle_deadline_exceeded",
                        cycle=self._cycle + 1,
                        deadline=deadline,
                        unresolved=unresolved,
                    )

                self._state = CycleState.AGGREGATING
                for task in done:
                    node = tasks[task]
                    if task.exception() is not None:
                        logger.error("probe_error", node=node.name, error=str(task.exception()))
                        unresolved.append(node.name)
                        continue
                    updated = await self._registry.upsert(node, task.result(), create=False)
                    if updated is None:
                        # Deregistered while the probe was in flight
                        await self._prober.forget(node.name)

                self._cycle += 1
                snapshot = await self._publish(sorted(unresolved))
                self._state = CycleState.PUBLISHED
            finally:
                self._last_cycle_seconds = time.monotonic() - started
                if self._state != CycleState.PUBLISHED:
                    self._state = CycleState.IDLE

            logger.info(
                "snapshot_published",
                cycle=snapshot.cycle,
                nodes=len(snapshot.nodes),
                up=snapshot.nodes_up,
                down=snapshot.nodes_down,
                backends=len(snapshot.backends),
                complete=snapshot.complete,
                duration_ms=round(self._last_cycle_seconds * 1000, 1),
            )
            self._state = CycleState.IDLE
            return snapshot

    async def remove_node(self, name: str) -> bool:
        """Deregister a node, release its probe client and republish."""
        if not await self._registry.deregister(name):
            return False
        await self._prober.forget(name)
        await self.refresh_snapshot()
        return True

    async def refresh_snapshot(self) -> FleetSnapshot:
        """Republish from current registry state without probing."""
        return await self._publish(())

    async def _publish(self, unresolved) -> FleetSnapshot:
        async with self._publish_lock:
            nodes = await self._registry.snapshot()
            backends = build_backends(
                nodes,
                configured=self._definition.backends,
                fallbacks=self._definition.fallbacks,
                ollama_port=self._settings.ollama_port,
            )
            snapshot = FleetSnapshot(
                taken_at=utcnow(),
                cycle=self._cycle,
                nodes=nodes,
                backends=backends,
                complete=not unresolved,
                unresolved=tuple(unresolved),
            )
            self._snapshot = snapshot
        return snapshot
