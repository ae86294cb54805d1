############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# catalog.py: Backend catalog built from node state and configuration
#
############################################################

"""Backend catalog.

Configured backends and remote fallbacks come from the fleet file. Local
GPU backends are derived from each node's current VRAM every time a
snapshot is built, so a VRAM change is reflected on the next publication.
"""

from typing import Iterable, List, Optional, Sequence

from fleetrouter.core.telemetry.models import (
    BackendKind,
    BackendRole,
    CostTier,
    ModelBackend,
    Node,
)
from fleetrouter.core.tiers import select_model_tier


def local_backends_for(node: Node, ollama_port: int = 11434) -> List[ModelBackend]:
    """Backends a node's own Ollama can serve, from its VRAM tier.

    A self-reported primary model overrides the tier default. A sidecar
    backend exists only when the node reports one.
    """
    tier = select_model_tier(node.capabilities.usable_vram_gb)
    if tier is None:
        return []

    report = node.report
    primary = (report.primary_model if report else None) or tier.model
    endpoint = (report.ollama_host if report else None) or f"http://{node.address}:{ollama_port}"

    backends = [
        ModelBackend(
            id=f"local:{node.name}:{primary}",
            kind=BackendKind.LOCAL_GPU,
            model=primary,
            node_name=node.name,
            role=BackendRole.PRIMARY,
            cost_tier=CostTier.FREE,
            priority=node.priority,
            endpoint=endpoint,
        )
    ]

    sidecar = report.sidecar_model if report else None
    if sidecar and sidecar != primary:
        backends.append(
            ModelBackend(
                id=f"local:{node.name}:{sidecar}",
                kind=BackendKind.LOCAL_GPU,
                model=sidecar,
                node_name=node.name,
                role=BackendRole.SIDECAR,
                cost_tier=CostTier.FREE,
                priority=node.priority,
                endpoint=endpoint,
            )
        )
    return backends


def build_backends(
    nodes: Iterable[Node],
    configured: Sequence[ModelBackend] = (),
    fallbacks: Sequence[ModelBackend] = (),
    ollama_port: int = 11434,
) -> tuple:
    """All backends for a snapshot: configured, derived, then fallbacks."""
    backends: List[ModelBackend] = list(configured)
    taken = {(b.node_name, b.model) for b in configured}

    for node in nodes:
        for backend in local_backends_for(node, ollama_port):
            if (backend.node_name, backend.model) in taken:
                continue
            taken.add((backend.node_name, backend.model))
            backends.append(backend)

    backends.extend(fallbacks)
    return tuple(backends)


def remote_fallback(model: str, endpoint: Optional[str] = None) -> ModelBackend:
    """A metered remote API fallback for ``model``."""
    return ModelBackend(
        id=f"remote:{model}",
        kind=BackendKind.REMOTE_API,
        model=model,
        role=BackendRole.FALLBACK,
        cost_tier=CostTier.METERED,
        endpoint=endpoint,
    )
