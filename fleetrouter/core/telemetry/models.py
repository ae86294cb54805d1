############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# models.py: Fleet data models for nodes, probes, backends and snapshots
#
############################################################

"""Fleet telemetry data models.

Everything a consumer can observe (``Node``, ``ModelBackend``,
``RoutingDecision``, ``FleetSnapshot``) is a frozen dataclass. The registry
swaps whole records instead of mutating them, so a published snapshot can
never be observed half-updated.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeRole(str, Enum):
    """Declared role of a fleet machine."""
    ORCHESTRATOR = "orchestrator"
    WORKER = "worker"
    INFERENCE = "inference"
    HUMAN_WORKSTATION = "human-workstation"


class GpuVendor(str, Enum):
    """GPU vendor as reported by a capability source."""
    NVIDIA = "NVIDIA"
    AMD = "AMD"
    APPLE = "Apple"
    UNKNOWN = "Unknown"


class HealthState(str, Enum):
    """Node health as tracked by the registry."""
    UNKNOWN = "Unknown"
    UP = "Up"
    DOWN = "Down"


class BackendKind(str, Enum):
    """Kind of inference target."""
    LOCAL_GPU = "LocalGpu"
    LAN_SERVER = "LanServer"
    REMOTE_API = "RemoteApi"


class CostTier(str, Enum):
    """Whether using a backend costs money."""
    FREE = "Free"
    METERED = "Metered"


class BackendRole(str, Enum):
    """Position a backend fills in a routing decision."""
    PRIMARY = "primary"
    SIDECAR = "sidecar"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class GpuReading:
    """Best discrete GPU found on a node."""

    vendor: GpuVendor = GpuVendor.UNKNOWN
    vram_gb: float = 0.0
    name: Optional[str] = None
    source: str = "none"  # nvml, rocm-smi, lspci, system_profiler, wmi, report
    exact: bool = False   # False when VRAM is a heuristic guess
    vram_used_gb: Optional[float] = None

    @property
    def counts_for_capacity(self) -> bool:
        """Integrated and unidentified GPUs never count toward capacity."""
        return self.vendor != GpuVendor.UNKNOWN and self.vram_gb > 0


@dataclass(frozen=True)
class CapabilityReport:
    """Capability document a node publishes about itself.

    Mirrors the model-load-optimizer plugin block of ``openclaw.json``
    plus the GPU fields the capability sidecar adds.
    """

    ollama_host: Optional[str] = None
    primary_model: Optional[str] = None
    sidecar_model: Optional[str] = None
    fallback_model: Optional[str] = None
    gpu_memory_threshold: Optional[float] = None
    gpu: Optional[GpuReading] = None
    has_compile_worker: Optional[bool] = None
    hostname: Optional[str] = None


@dataclass(frozen=True)
class NodeCapabilities:
    """Compile and inference capacity of a node."""

    has_compile_worker: bool = False
    has_gpu: bool = False
    vram_gb: float = 0.0
    gpu_vendor: GpuVendor = GpuVendor.UNKNOWN
    gpu_name: Optional[str] = None
    vram_used_gb: Optional[float] = None

    @classmethod
    def from_reading(
        cls,
        reading: GpuReading,
        has_compile_worker: bool = False,
    ) -> "NodeCapabilities":
        """Derive capabilities from a fresh GPU reading (no history merge)."""
        if not reading.counts_for_capacity:
            return cls(has_compile_worker=has_compile_worker, gpu_name=reading.name)
        return cls(
            has_compile_worker=has_compile_worker,
            has_gpu=True,
            vram_gb=float(reading.vram_gb),
            gpu_vendor=reading.vendor,
            gpu_name=reading.name,
            vram_used_gb=reading.vram_used_gb,
        )

    @property
    def usable_vram_gb(self) -> float:
        """VRAM that counts for capacity accounting."""
        if not self.has_gpu or self.gpu_vendor == GpuVendor.UNKNOWN:
            return 0.0
        return self.vram_gb


@dataclass(frozen=True)
class LivenessResult:
    """Outcome of an HTTP liveness probe."""

    health: HealthState
    status_code: Optional[int] = None
    latency_ms: float = 0.0
    failure: Optional[str] = None  # timeout, refused, bad_status, error
    error_message: Optional[str] = None

    @property
    def is_up(self) -> bool:
        return self.health == HealthState.UP


@dataclass(frozen=True)
class ProbeResult:
    """Combined liveness and capability result for one node."""

    node_name: str
    liveness: LivenessResult
    gpu: Optional[GpuReading] = None
    report: Optional[CapabilityReport] = None
    probed_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.liveness.is_up


@dataclass(frozen=True)
class Node:
    """A machine participating in the fleet."""

    name: str
    address: str
    port: int = 3284
    role: NodeRole = NodeRole.WORKER
    capabilities: NodeCapabilities = field(default_factory=NodeCapabilities)
    health: HealthState = HealthState.UNKNOWN
    last_seen: Optional[datetime] = None
    consecutive_failures: int = 0
    priority: int = 0
    lan: Optional[bool] = None
    capability_url: Optional[str] = None
    is_local: bool = False
    report: Optional[CapabilityReport] = None

    @property
    def agent_url(self) -> str:
        return f"http://{self.address}:{self.port}"

    @property
    def is_up(self) -> bool:
        return self.health == HealthState.UP


@dataclass(frozen=True)
class ModelBackend:
    """A selectable inference target."""

    id: str
    kind: BackendKind
    model: str
    node_name: Optional[str] = None
    role: BackendRole = BackendRole.PRIMARY
    tokens_per_sec: Optional[float] = None
    cost_tier: CostTier = CostTier.FREE
    priority: int = 0
    endpoint: Optional[str] = None


@dataclass(frozen=True)
class ExcludedBackend:
    """A backend the router dropped, and why."""

    backend_id: str
    reason: str


@dataclass(frozen=True)
class RoutingDecision:
    """Ordered backends for one request: primary, sidecar(s), fallback(s)."""

    requesting_node: str
    workload_hint: str
    backends: Tuple[ModelBackend, ...]
    reason: str
    snapshot_taken_at: datetime
    excluded: Tuple[ExcludedBackend, ...] = ()

    @property
    def primary(self) -> ModelBackend:
        return self.backends[0]

    @property
    def fallback_only(self) -> bool:
        return all(b.kind == BackendKind.REMOTE_API for b in self.backends)


@dataclass(frozen=True)
class FleetSnapshot:
    """Immutable point-in-time view of the fleet."""

    taken_at: datetime
    cycle: int
    nodes: Tuple[Node, ...] = ()
    backends: Tuple[ModelBackend, ...] = ()
    complete: bool = True
    unresolved: Tuple[str, ...] = ()

    def get_node(self, name: str) -> Optional[Node]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return max(0.0, (now - self.taken_at).total_seconds())

    @property
    def nodes_up(self) -> int:
        return sum(1 for n in self.nodes if n.health == HealthState.UP)

    @property
    def nodes_down(self) -> int:
        return sum(1 for n in self.nodes if n.health == HealthState.DOWN)
