############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# schemas.py: Wire schemas for the fleet file and capability documents
#
############################################################

"""Pydantic schemas for data that crosses a process boundary.

The fleet file and capability documents use camelCase keys, matching the
``openclaw.json`` plugin block the provisioning scripts write. Python code
uses the snake_case attribute names.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleetrouter.core.telemetry.models import (
    BackendKind,
    CapabilityReport,
    CostTier,
    GpuReading,
    GpuVendor,
    NodeCapabilities,
    NodeRole,
)


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class CamelModel(BaseModel):
    """Base model accepting both camelCase and snake_case keys."""

    model_config = ConfigDict(
        alias_generator=_to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class CapabilityDocument(CamelModel):
    """Capability document served by a node's sidecar at GET /capability."""

    model_config = ConfigDict(
        alias_generator=_to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    ollama_host: Optional[str] = None
    primary_model: Optional[str] = None
    sidecar_model: Optional[str] = None
    fallback_model: Optional[str] = None
    gpu_memory_threshold: Optional[float] = Field(default=None, gt=0, le=1)
    gpu_vendor: Optional[GpuVendor] = None
    gpu_name: Optional[str] = None
    vram_gb: Optional[float] = Field(default=None, ge=0)
    vram_used_gb: Optional[float] = Field(default=None, ge=0)
    has_compile_worker: Optional[bool] = None
    hostname: Optional[str] = None

    @field_validator("primary_model", "sidecar_model", "fallback_model", mode="before")
    @classmethod
    def empty_model_is_none(cls, v):
        """The scripts write ``"sidecarModel": ""`` when there is none."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def to_report(self) -> CapabilityReport:
        gpu = None
        if self.vram_gb is not None or self.gpu_vendor is not None:
            gpu = GpuReading(
                vendor=self.gpu_vendor or GpuVendor.UNKNOWN,
                vram_gb=self.vram_gb or 0.0,
                name=self.gpu_name,
                source="report",
                exact=True,
                vram_used_gb=self.vram_used_gb,
            )
        return CapabilityReport(
            ollama_host=self.ollama_host,
            primary_model=self.primary_model,
            sidecar_model=self.sidecar_model,
            fallback_model=self.fallback_model,
            gpu_memory_threshold=self.gpu_memory_threshold,
            gpu=gpu,
            has_compile_worker=self.has_compile_worker,
            hostname=self.hostname,
        )

    @classmethod
    def from_report(cls, report: CapabilityReport) -> "CapabilityDocument":
        gpu = report.gpu
        return cls(
            ollama_host=report.ollama_host,
            primary_model=report.primary_model,
            sidecar_model=report.sidecar_model,
            fallback_model=report.fallback_model,
            gpu_memory_threshold=report.gpu_memory_threshold,
            gpu_vendor=gpu.vendor if gpu else None,
            gpu_name=gpu.name if gpu else None,
            vram_gb=gpu.vram_gb if gpu else None,
            vram_used_gb=gpu.vram_used_gb if gpu else None,
            has_compile_worker=report.has_compile_worker,
            hostname=report.hostname,
        )


class CapabilityHints(CamelModel):
    """Static capability hints for a node in the fleet file."""

    has_compile_worker: bool = False
    has_gpu: bool = False
    vram_gb: float = Field(default=0.0, ge=0)
    gpu_vendor: GpuVendor = GpuVendor.UNKNOWN
    gpu_name: Optional[str] = None

    def to_capabilities(self) -> NodeCapabilities:
        return NodeCapabilities(
            has_compile_worker=self.has_compile_worker,
            has_gpu=self.has_gpu and self.gpu_vendor != GpuVendor.UNKNOWN,
            vram_gb=self.vram_gb,
            gpu_vendor=self.gpu_vendor,
            gpu_name=self.gpu_name,
        )


class NodeEntry(CamelModel):
    """One node in the fleet file (an ``AGENTS`` array entry)."""

    name: str = Field(..., min_length=1, max_length=100)
    address: str = Field(..., min_length=1)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    role: NodeRole = NodeRole.WORKER
    capabilities: Optional[CapabilityHints] = None
    capability_url: Optional[str] = None
    lan: Optional[bool] = None
    local: bool = False
    priority: int = 0

    @field_validator("address")
    @classmethod
    def address_has_no_scheme(cls, v: str) -> str:
        if "://" in v:
            raise ValueError("address must be a host name or IP, not a URL")
        return v.strip()


class BackendEntry(CamelModel):
    """A configured inference server bound to a node."""

    id: Optional[str] = None
    kind: BackendKind = BackendKind.LAN_SERVER
    node: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    role: str = "primary"
    endpoint: Optional[str] = None
    tokens_per_sec: Optional[float] = Field(default=None, gt=0)
    cost_tier: CostTier = CostTier.FREE
    priority: int = 0

    @field_validator("kind")
    @classmethod
    def not_remote(cls, v: BackendKind) -> BackendKind:
        if v == BackendKind.REMOTE_API:
            raise ValueError("remote APIs belong in remoteFallbacks")
        return v

    @field_validator("role")
    @classmethod
    def known_role(cls, v: str) -> str:
        if v not in ("primary", "sidecar"):
            raise ValueError("role must be 'primary' or 'sidecar'")
        return v


class FallbackEntry(CamelModel):
    """A remote API fallback, always appended last to a routing decision."""

    id: Optional[str] = None
    model: str = Field(..., min_length=1)
    endpoint: Optional[str] = None
    cost_tier: CostTier = CostTier.METERED
    priority: int = 0


class FleetFile(CamelModel):
    """Top-level fleet definition."""

    nodes: List[NodeEntry] = Field(default_factory=list)
    backends: List[BackendEntry] = Field(default_factory=list)
    remote_fallbacks: List[FallbackEntry] = Field(default_factory=list)
    lan_ranges: Optional[List[str]] = None
