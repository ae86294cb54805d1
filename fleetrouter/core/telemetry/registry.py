############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# registry.py: Node registry holding last-known fleet state
#
############################################################

"""Node registry - in-memory table of fleet nodes and their health."""

import asyncio
from dataclasses import replace
from typing import Dict, Optional, Tuple

from fleetrouter.core.telemetry.models import (
    CapabilityReport,
    HealthState,
    Node,
    NodeCapabilities,
    ProbeResult,
)
from fleetrouter.errors import UnknownNode
from fleetrouter.logging_config import get_logger
from fleetrouter.settings import get_settings

logger = get_logger(__name__)


def _capabilities_from_report(
    current: NodeCapabilities,
    report: Optional[CapabilityReport],
    gpu_reading=None,
) -> NodeCapabilities:
    """Re-derive capabilities from the newest reading, keeping the compile flag."""
    has_compile_worker = current.has_compile_worker
    if report is not None and report.has_compile_worker is not None:
        has_compile_worker = report.has_compile_worker

    reading = gpu_reading if gpu_reading is not None else (report.gpu if report else None)
    if reading is None:
        return replace(current, has_compile_worker=has_compile_worker)
    return NodeCapabilities.from_reading(reading, has_compile_worker=has_compile_worker)


class NodeRegistry:
    """
    Keyed store of fleet nodes.

    Records are frozen; every change swaps in a new ``Node``, so readers
    holding an earlier ``snapshot()`` are never affected.

    Health rules:
    - a successful probe sets ``Up``, refreshes ``last_seen`` and zeroes
      the failure counter
    - a failed probe increments the counter; health flips to ``Down``
      when it reaches ``down_threshold`` and is otherwise left alone
    - nodes are only removed through ``deregister``
    """

    def __init__(self, down_threshold: Optional[int] = None):
        self._down_threshold = down_threshold or get_settings().down_threshold
        self._nodes: Dict[str, Node] = {}
        self._lock = asyncio.Lock()

    @property
    def down_threshold(self) -> int:
        return self._down_threshold

    async def register(self, node: Node) -> Node:
        """Add or redefine a node, keeping runtime state of an existing entry."""
        async with self._lock:
            existing = self._nodes.get(node.name)
            if existing is not None:
                node = replace(
                    node,
                    health=existing.health,
                    last_seen=existing.last_seen,
                    consecutive_failures=existing.consecutive_failures,
                    report=existing.report,
                )
            self._nodes[node.name] = node

        if existing is None:
            logger.info("node_registered", node=node.name, address=node.address, role=node.role.value)
        return node

    async def upsert(self, node: Node, result: ProbeResult, create: bool = True) -> Optional[Node]:
        """Merge a probe result into the node's record.

        With ``create=False`` a node that is no longer registered is left
        out and None is returned.
        """
        async with self._lock:
            current = self._nodes.get(node.name)
            if current is None:
                if not create:
                    return None
                current = node
                logger.info("node_discovered", node=node.name, address=node.address)

            capabilities = current.capabilities
            report = current.report
            if result.report is not None or result.gpu is not None:
                report = result.report if result.report is not None else report
                capabilities = _capabilities_from_report(
                    current.capabilities, result.report, result.gpu
                )

            if result.succeeded:
                health = HealthState.UP
                failures = 0
                last_seen = result.probed_at
            else:
                failures = current.consecutive_failures + 1
                health = HealthState.DOWN if failures >= self._down_threshold else current.health
                last_seen = current.last_seen

            updated = replace(
                current,
                capabilities=capabilities,
                report=report,
                health=health,
                consecutive_failures=failures,
                last_seen=last_seen,
            )
            self._nodes[node.name] = updated

        if updated.health != current.health:
            log = logger.warning if updated.health == HealthState.DOWN else logger.info
            log(
                "node_health_changed",
                node=node.name,
                previous=current.health.value,
                health=updated.health.value,
                consecutive_failures=failures,
                error=result.liveness.error_message,
            )
        if capabilities.vram_gb != current.capabilities.vram_gb:
            logger.info(
                "node_vram_changed",
                node=node.name,
                previous_gb=current.capabilities.vram_gb,
                vram_gb=capabilities.vram_gb,
            )
        return updated

    async def apply_report(self, name: str, report: CapabilityReport) -> Node:
        """Apply a capability document pushed by the node itself."""
        async with self._lock:
            current = self._nodes.get(name)
            if current is None:
                raise UnknownNode(name)
            updated = replace(
                current,
                report=report,
                capabilities=_capabilities_from_report(current.capabilities, report),
            )
            self._nodes[name] = updated

        logger.info(
            "capability_reported",
            node=name,
            vram_gb=updated.capabilities.vram_gb,
            primary_model=report.primary_model,
        )
        return updated

    async def deregister(self, name: str) -> bool:
        """Remove a node explicitly."""
        async with self._lock:
            removed = self._nodes.pop(name, None)

        if removed is not None:
            logger.info("node_deregistered", node=name)
        return removed is not None

    async def get(self, name: str) -> Optional[Node]:
        async with self._lock:
            return self._nodes.get(name)

    async def snapshot(self) -> Tuple[Node, ...]:
        """Immutable copy of all nodes, ordered by name."""
        async with self._lock:
            return tuple(self._nodes[name] for name in sorted(self._nodes))
