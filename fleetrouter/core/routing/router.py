############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# router.py: Model router ranking backends for a requesting node
#
############################################################

"""Model router - picks the ordered backend list for a request.

The router works only from the snapshot it is handed; it never probes. For
a requesting node it:

1. keeps backends whose node is ``Up`` (remote fallbacks are always kept)
2. partitions them into same-node, LAN and remote
3. ranks each partition by VRAM tier, VRAM, priority, role and throughput
4. concatenates same-node -> LAN -> remote -> remote API fallbacks

A ``LocalGpu`` backend only serves the node it runs on. Configured
``LanServer`` backends serve any node.
"""

import ipaddress
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Tuple

from fleetrouter.core.routing.catalog import remote_fallback
from fleetrouter.core.telemetry.models import (
    BackendKind,
    BackendRole,
    CostTier,
    ExcludedBackend,
    FleetSnapshot,
    ModelBackend,
    Node,
    RoutingDecision,
)
from fleetrouter.core.tiers import VramTier, tier_by_name, tier_rank
from fleetrouter.errors import NO_BACKENDS_AVAILABLE
from fleetrouter.logging_config import get_logger

logger = get_logger(__name__)


class Partition(IntEnum):
    """Routing partitions, in preference order."""
    SAME_NODE = 0
    LAN = 1
    REMOTE = 2


PARTITION_REASONS = {
    Partition.SAME_NODE: "same_node",
    Partition.LAN: "lan",
    Partition.REMOTE: "remote",
}

ROLE_ORDER = {
    BackendRole.PRIMARY: 0,
    BackendRole.SIDECAR: 1,
    BackendRole.FALLBACK: 2,
}


@dataclass(frozen=True)
class WorkloadHint:
    """Parsed workload hint.

    The hint is a comma separated list of tokens:

    - ``metered`` / ``allow-metered``: metered node backends may be used
    - ``free-only`` / ``no-metered``: they may not
    - ``min-tier=<name>``: skip local/LAN backends below that VRAM tier

    Unrecognized tokens describe the workload and do not affect routing.
    """

    raw: str = ""
    allow_metered: Optional[bool] = None
    min_tier: Optional[VramTier] = None

    @classmethod
    def parse(cls, hint: Optional[str]) -> "WorkloadHint":
        allow_metered = None
        min_tier = None
        for token in (hint or "").split(","):
            token = token.strip().lower()
            if not token:
                continue
            if token in ("metered", "allow-metered"):
                allow_metered = True
            elif token in ("free-only", "no-metered"):
                allow_metered = False
            elif token.startswith("min-tier="):
                name = token.split("=", 1)[1]
                min_tier = tier_by_name(name)
                if min_tier is None:
                    raise ValueError(f"unknown tier in workload hint: {name}")
        return cls(raw=hint or "", allow_metered=allow_metered, min_tier=min_tier)


@dataclass(frozen=True)
class RankedBackend:
    """A candidate backend with the facts it is ranked on."""

    backend: ModelBackend
    partition: Partition
    tier_rank: int
    vram_gb: float
    node_priority: int

    @property
    def sort_key(self) -> tuple:
        return (
            self.partition,
            -self.tier_rank,
            -self.vram_gb,
            -self.backend.priority,
            -self.node_priority,
            ROLE_ORDER[self.backend.role],
            -(self.backend.tokens_per_sec or 0.0),
            self.backend.id,
        )


class ModelRouter:
    """
    Routes requests to model backends.

    Stateless apart from its configuration; any number of callers may use
    one instance concurrently.
    """

    def __init__(
        self,
        lan_networks: Sequence = (),
        allow_metered_default: bool = False,
    ):
        self._lan_networks = list(lan_networks)
        self._allow_metered_default = allow_metered_default

    def is_lan(self, node: Node) -> bool:
        """True when the node sits in a configured LAN range (or says so)."""
        if node.lan is not None:
            return node.lan
        try:
            address = ipaddress.ip_address(node.address)
        except ValueError:
            return False
        return any(address in network for network in self._lan_networks)

    def _fallbacks(
        self, snapshot: FleetSnapshot, requester: Optional[Node]
    ) -> List[ModelBackend]:
        fallbacks = sorted(
            (b for b in snapshot.backends if b.kind == BackendKind.REMOTE_API),
            key=lambda b: (-b.priority, b.id),
        )
        preferred = requester.report.fallback_model if requester and requester.report else None
        if preferred:
            matching = [b for b in fallbacks if b.model == preferred]
            if matching:
                fallbacks = matching + [b for b in fallbacks if b.model != preferred]
            else:
                fallbacks.insert(0, remote_fallback(preferred))
        return fallbacks

    def candidates(
        self,
        snapshot: FleetSnapshot,
        requesting_node: str,
        hint: WorkloadHint,
    ) -> Tuple[List[RankedBackend], List[ExcludedBackend]]:
        """Eligible node-bound backends and the ones that were dropped."""
        nodes: Dict[str, Node] = {n.name: n for n in snapshot.nodes}
        allow_metered = (
            hint.allow_metered if hint.allow_metered is not None else self._allow_metered_default
        )

        ranked: List[RankedBackend] = []
        excluded: List[ExcludedBackend] = []

        for backend in snapshot.backends:
            if backend.kind == BackendKind.REMOTE_API:
                continue

            same_node = backend.node_name == requesting_node
            if backend.kind == BackendKind.LOCAL_GPU and not same_node:
                continue

            node = nodes.get(backend.node_name)
            if node is None:
                excluded.append(ExcludedBackend(backend.id, "node_missing"))
                continue
            if not node.is_up:
                excluded.append(ExcludedBackend(backend.id, f"node_{node.health.value.lower()}"))
                continue

            vram_gb = node.capabilities.usable_vram_gb
            rank = tier_rank(vram_gb)
            if rank == 0:
                excluded.append(ExcludedBackend(backend.id, "below_min_vram"))
                continue
            if hint.min_tier is not None and rank < hint.min_tier.rank:
                excluded.append(ExcludedBackend(backend.id, "below_min_tier"))
                continue
            if backend.cost_tier == CostTier.METERED and not allow_metered:
                excluded.append(ExcludedBackend(backend.id, "metered_not_permitted"))
                continue

            if same_node:
                partition = Partition.SAME_NODE
            elif self.is_lan(node):
                partition = Partition.LAN
            else:
                partition = Partition.REMOTE

            ranked.append(
                RankedBackend(
                    backend=backend,
                    partition=partition,
                    tier_rank=rank,
                    vram_gb=vram_gb,
                    node_priority=node.priority,
                )
            )

        ranked.sort(key=lambda c: c.sort_key)
        return ranked, excluded

    def route(
        self,
        snapshot: FleetSnapshot,
        requesting_node: str,
        workload_hint: Optional[str] = "",
    ) -> RoutingDecision:
        """
        Compute the routing decision for a request.

        Args:
            snapshot: Fleet snapshot to route against
            requesting_node: Name of the node making the request
            workload_hint: Optional hint string (see ``WorkloadHint``)

        Returns:
            RoutingDecision whose backend list always ends with the
            remote API fallback(s)

        Raises:
            ValueError: if the workload hint names an unknown tier
        """
        hint = WorkloadHint.parse(workload_hint)
        requester = snapshot.get_node(requesting_node)

        ranked, excluded = self.candidates(snapshot, requesting_node, hint)
        fallbacks = self._fallbacks(snapshot, requester)

        if ranked:
            reason = PARTITION_REASONS[ranked[0].partition]
        else:
            reason = NO_BACKENDS_AVAILABLE

        decision = RoutingDecision(
            requesting_node=requesting_node,
            workload_hint=hint.raw,
            backends=tuple([c.backend for c in ranked] + fallbacks),
            reason=reason,
            snapshot_taken_at=snapshot.taken_at,
            excluded=tuple(excluded),
        )

        logger.debug(
            "route_decided",
            requesting_node=requesting_node,
            hint=hint.raw,
            reason=reason,
            primary=decision.primary.id,
            candidates=len(decision.backends),
            excluded=len(excluded),
            known_requester=requester is not None,
        )
        return decision
