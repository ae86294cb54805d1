############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# prober.py: Per-node liveness and GPU capacity probes
#
############################################################

"""Capability prober.

Runs two independent, time-bounded checks per node:

- liveness: GET <agent>/status, ``Up`` on 2xx
- capacity: local vendor tools for this machine, the node's published
  capability document for everyone else

Nothing here raises to the caller and nothing mutates shared state. The
aggregator feeds the returned ``ProbeResult`` into the registry.
"""

import asyncio
import time
from typing import Dict, Optional, Tuple

import httpx

from fleetrouter.core.telemetry.adapters.capability_client import CapabilityClient
from fleetrouter.core.telemetry.adapters.gpu_sources import (
    LocalGpuDetector,
    detect_compile_worker,
)
from fleetrouter.core.telemetry.models import (
    CapabilityReport,
    GpuReading,
    HealthState,
    LivenessResult,
    Node,
    ProbeResult,
)
from fleetrouter.errors import ProbeRefused, ProbeTimeout
from fleetrouter.logging_config import get_logger
from fleetrouter.settings import Settings, get_settings

logger = get_logger(__name__)


class CapabilityProber:
    """Probes fleet nodes for liveness and GPU capacity."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        detector: Optional[LocalGpuDetector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings or get_settings()
        self._timeout = self._settings.probe_timeout
        self._detector = detector or LocalGpuDetector(timeout=self._timeout)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._capability_clients: Dict[str, CapabilityClient] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP clients."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        for client in self._capability_clients.values():
            await client.close()
        self._capability_clients.clear()

    async def forget(self, name: str) -> None:
        """Drop and close the capability client kept for a removed node."""
        client = self._capability_clients.pop(name, None)
        if client is not None:
            await client.close()

    def capability_url(self, node: Node) -> str:
        if node.capability_url:
            return node.capability_url
        return (
            f"http://{node.address}:{self._settings.capability_port}"
            f"{self._settings.capability_path}"
        )

    async def _get(self, url: str) -> httpx.Response:
        """GET with the probe timeout, mapping transport errors to probe errors."""
        client = await self._get_client()
        try:
            return await client.get(url, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise ProbeTimeout(url, self._timeout) from e
        except httpx.ConnectError as e:
            raise ProbeRefused(url, str(e) or "connection refused") from e

    async def check_liveness(self, node: Node) -> LivenessResult:
        """Liveness probe against the node's agent status endpoint."""
        url = f"{node.agent_url}{self._settings.status_path}"
        start_time = time.monotonic()
        try:
            response = await self._get(url)
            latency_ms = (time.monotonic() - start_time) * 1000

            if 200 <= response.status_code < 300:
                return LivenessResult(
                    health=HealthState.UP,
                    status_code=response.status_code,
                    latency_ms=latency_ms,
                )
            return LivenessResult(
                health=HealthState.DOWN,
                status_code=response.status_code,
                latency_ms=latency_ms,
                failure="bad_status",
                error_message=f"HTTP {response.status_code}",
            )

        except ProbeTimeout as e:
            return LivenessResult(
                health=HealthState.DOWN,
                latency_ms=(time.monotonic() - start_time) * 1000,
                failure="timeout",
                error_message=str(e),
            )
        except ProbeRefused as e:
            return LivenessResult(
                health=HealthState.DOWN,
                latency_ms=(time.monotonic() - start_time) * 1000,
                failure="refused",
                error_message=str(e),
            )
        except Exception as e:
            return LivenessResult(
                health=HealthState.DOWN,
                latency_ms=(time.monotonic() - start_time) * 1000,
                failure="error",
                error_message=str(e),
            )

    async def check_capacity(
        self, node: Node
    ) -> Tuple[Optional[GpuReading], Optional[CapabilityReport]]:
        """GPU capacity probe. (None, None) means capacity is unknown this cycle."""
        if node.is_local:
            try:
                reading = await asyncio.wait_for(self._detector.detect(), timeout=self._timeout)
            except asyncio.TimeoutError:
                logger.warning("local_gpu_probe_timeout", node=node.name, timeout=self._timeout)
                return None, None
            except Exception as e:
                logger.warning("local_gpu_probe_error", node=node.name, error=str(e))
                return None, None
            report = CapabilityReport(gpu=reading, has_compile_worker=detect_compile_worker())
            return reading, report

        client = self._capability_clients.get(node.name)
        url = self.capability_url(node)
        if client is None or client.url != url:
            if client is not None:
                await client.close()
            client = CapabilityClient(
                url,
                timeout=self._timeout,
                sidecar_key=self._settings.sidecar_key,
                transport=self._transport,
            )
            self._capability_clients[node.name] = client

        report = await client.get_report()
        if report is None:
            return None, None
        return report.gpu, report

    async def probe(self, node: Node) -> ProbeResult:
        """Run both checks concurrently and combine them."""
        liveness, (gpu, report) = await asyncio.gather(
            self.check_liveness(node),
            self.check_capacity(node),
        )
        if not liveness.is_up:
            logger.debug(
                "probe_failed",
                node=node.name,
                failure=liveness.failure,
                error=liveness.error_message,
            )
        return ProbeResult(node_name=node.name, liveness=liveness, gpu=gpu, report=report)
