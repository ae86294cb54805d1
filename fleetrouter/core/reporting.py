############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# reporting.py: JSON views of snapshots and routing decisions
#
############################################################

"""JSON-ready views shared by the HTTP API and the CLI."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fleetrouter.core.telemetry.models import (
    FleetSnapshot,
    ModelBackend,
    Node,
    RoutingDecision,
)
from fleetrouter.core.tiers import select_model_tier


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def node_to_dict(node: Node) -> Dict[str, Any]:
    caps = node.capabilities
    tier = select_model_tier(caps.usable_vram_gb)
    return {
        "name": node.name,
        "address": node.address,
        "port": node.port,
        "role": node.role.value,
        "health": node.health.value,
        "lastSeen": _iso(node.last_seen),
        "consecutiveFailures": node.consecutive_failures,
        "local": node.is_local,
        "capabilities": {
            "hasCompileWorker": caps.has_compile_worker,
            "hasGpu": caps.has_gpu,
            "vramGb": caps.vram_gb,
            "vramUsedGb": caps.vram_used_gb,
            "gpuVendor": caps.gpu_vendor.value,
            "gpuName": caps.gpu_name,
        },
        "tier": tier.name if tier else None,
    }


def backend_to_dict(backend: ModelBackend) -> Dict[str, Any]:
    return {
        "id": backend.id,
        "kind": backend.kind.value,
        "model": backend.model,
        "node": backend.node_name,
        "role": backend.role.value,
        "costTier": backend.cost_tier.value,
        "tokensPerSec": backend.tokens_per_sec,
        "endpoint": backend.endpoint,
    }


def snapshot_to_dict(snapshot: FleetSnapshot, age_seconds: float) -> Dict[str, Any]:
    return {
        "takenAt": _iso(snapshot.taken_at),
        "ageSeconds": round(age_seconds, 3),
        "cycle": snapshot.cycle,
        "complete": snapshot.complete,
        "unresolved": list(snapshot.unresolved),
        "summary": {
            "nodes": len(snapshot.nodes),
            "up": snapshot.nodes_up,
            "down": snapshot.nodes_down,
            "backends": len(snapshot.backends),
        },
        "nodes": [node_to_dict(n) for n in snapshot.nodes],
        "backends": [backend_to_dict(b) for b in snapshot.backends],
    }


def decision_to_dict(decision: RoutingDecision) -> Dict[str, Any]:
    return {
        "requestingNode": decision.requesting_node,
        "workloadHint": decision.workload_hint,
        "reason": decision.reason,
        "fallbackOnly": decision.fallback_only,
        "snapshotTakenAt": _iso(decision.snapshot_taken_at),
        "backends": [backend_to_dict(b) for b in decision.backends],
        "excluded": [
            {"backend": e.backend_id, "reason": e.reason} for e in decision.excluded
        ],
    }


def format_status(data: Dict[str, Any]) -> List[str]:
    """Plain-text status lines from a ``snapshot_to_dict`` payload."""
    summary = data["summary"]
    header = (
        f"cycle {data['cycle']}: {summary['up']}/{summary['nodes']} nodes up, "
        f"{summary['backends']} backends, age {data['ageSeconds']:.1f}s"
    )
    if not data["complete"]:
        header += f" (incomplete: {', '.join(data['unresolved'])})"

    lines = [header]
    for node in data["nodes"]:
        caps = node["capabilities"]
        lines.append(
            f"  {node['name']:<20} {node['health']:<8} {node['role']:<18} "
            f"{caps['gpuVendor']:<8} {caps['vramGb']:>5.1f}GB  {node['tier'] or '-'}"
        )
    return lines


def format_decision(data: Dict[str, Any]) -> List[str]:
    """Plain-text lines from a ``decision_to_dict`` payload."""
    lines = [f"route for {data['requestingNode']} ({data['reason']}):"]
    for position, backend in enumerate(data["backends"], start=1):
        where = f" @ {backend['node']}" if backend["node"] else ""
        lines.append(
            f"  {position}. {backend['model']}{where} "
            f"[{backend['kind']}, {backend['role']}, {backend['costTier']}]"
        )
    for excluded in data["excluded"]:
        lines.append(f"  - skipped {excluded['backend']}: {excluded['reason']}")
    return lines
