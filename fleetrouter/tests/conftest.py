############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# conftest.py: Pytest configuration and shared test fixtures
#
############################################################

"""Pytest configuration and shared fixtures for fleetrouter tests."""

import asyncio
from typing import Dict, Optional, Sequence

import pytest

from fleetrouter.core.routing.catalog import build_backends, remote_fallback
from fleetrouter.core.telemetry.models import (
    CapabilityReport,
    FleetSnapshot,
    GpuReading,
    GpuVendor,
    HealthState,
    LivenessResult,
    ModelBackend,
    Node,
    NodeCapabilities,
    ProbeResult,
    utcnow,
)
from fleetrouter.settings import Settings

# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]


class FakeProber:
    """Prober stand-in with scripted per-node outcomes."""

    def __init__(self):
        self.down = set()
        self.stall = set()
        self.gpu: Dict[str, GpuReading] = {}
        self.reports: Dict[str, CapabilityReport] = {}
        self.delay = 0.0
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self.forgotten = []

    async def probe(self, node: Node) -> ProbeResult:
        self.calls.append(node.name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if node.name in self.stall:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if node.name in self.down:
                liveness = LivenessResult(
                    health=HealthState.DOWN,
                    failure="refused",
                    error_message=f"{node.name}: connection refused",
                )
            else:
                liveness = LivenessResult(health=HealthState.UP, status_code=200)
            return ProbeResult(
                node_name=node.name,
                liveness=liveness,
                gpu=self.gpu.get(node.name),
                report=self.reports.get(node.name),
            )
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True

    async def forget(self, name: str) -> None:
        self.forgotten.append(name)


@pytest.fixture
def settings():
    """Settings isolated from any .env file."""
    return Settings(
        _env_file=None,
        probe_timeout=0.5,
        poll_interval=3600,
        down_threshold=3,
        max_in_flight_probes=10,
        lan_ranges=["192.168.0.0/16", "10.0.0.0/8"],
        sidecar_key=None,
    )


@pytest.fixture
def fake_prober():
    return FakeProber()


def _make_node(
    name: str,
    address: str = "192.168.1.10",
    vram_gb: float = 0.0,
    vendor: GpuVendor = GpuVendor.NVIDIA,
    health: HealthState = HealthState.UP,
    **kwargs,
) -> Node:
    has_gpu = vram_gb > 0
    capabilities = NodeCapabilities(
        has_gpu=has_gpu,
        vram_gb=vram_gb,
        gpu_vendor=vendor if has_gpu else GpuVendor.UNKNOWN,
    )
    return Node(name=name, address=address, capabilities=capabilities, health=health, **kwargs)


@pytest.fixture
def make_node():
    """Factory for nodes with a given VRAM and health."""
    return _make_node


@pytest.fixture
def make_snapshot():
    """Factory building a snapshot the way the aggregator does."""

    def _make(
        nodes: Sequence[Node],
        configured: Sequence[ModelBackend] = (),
        fallbacks: Optional[Sequence[ModelBackend]] = None,
    ) -> FleetSnapshot:
        if fallbacks is None:
            fallbacks = [remote_fallback(Settings(_env_file=None).remote_fallback_model)]
        return FleetSnapshot(
            taken_at=utcnow(),
            cycle=1,
            nodes=tuple(sorted(nodes, key=lambda n: n.name)),
            backends=build_backends(nodes, configured, fallbacks),
        )

    return _make


@pytest.fixture
def fleet_document():
    """A small valid fleet file document."""
    return {
        "nodes": [
            {
                "name": "nodeA",
                "address": "192.168.1.10",
                "role": "inference",
                "capabilities": {"hasGpu": True, "gpuVendor": "NVIDIA", "vramGb": 16},
            },
            {
                "name": "nodeB",
                "address": "192.168.1.11",
                "role": "worker",
                "capabilities": {"hasGpu": True, "gpuVendor": "AMD", "vramGb": 6},
            },
            {"name": "nodeC", "address": "192.168.1.12", "role": "human-workstation"},
        ],
        "backends": [
            {
                "node": "nodeA",
                "kind": "LanServer",
                "model": "codellama:13b",
                "endpoint": "http://192.168.1.10:11434",
            }
        ],
        "remoteFallbacks": [{"model": "anthropic/claude-sonnet-4-5"}],
    }
