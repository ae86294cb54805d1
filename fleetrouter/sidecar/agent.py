############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# agent.py: Capability sidecar agent run on each fleet node
#
# Runs next to the node's coding agent and publishes the
# node's GPU capacity and model configuration. The fleet
# prober fetches GET /capability every cycle.
#
############################################################

"""Capability sidecar agent."""

import json
import secrets
import socket
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import ValidationError

from fleetrouter.core.schemas import CapabilityDocument
from fleetrouter.core.telemetry.adapters.gpu_sources import (
    LocalGpuDetector,
    detect_compile_worker,
)
from fleetrouter.core.telemetry.models import CapabilityReport, GpuReading
from fleetrouter.core.tiers import select_model_tier
from fleetrouter.logging_config import get_logger, setup_logging
from fleetrouter.settings import Settings, get_settings

logger = get_logger(__name__)

PLUGIN_NAME = "model-load-optimizer"


def read_plugin_config(path: str) -> Dict[str, Any]:
    """Return the model-load-optimizer config block of an openclaw.json, or {}."""
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        return {}
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("plugin_config_unreadable", path=str(config_path), error=str(e))
        return {}

    entry = data.get("plugins", {}).get("entries", {}).get(PLUGIN_NAME, {})
    if not entry.get("enabled", True):
        return {}
    return entry.get("config", {}) or {}


class SidecarState:
    """Detected GPU plus the configured model block for this node."""

    def __init__(self, settings: Settings, detector: LocalGpuDetector):
        self.settings = settings
        self.detector = detector
        self.gpu: GpuReading = GpuReading()
        self.has_compile_worker = False
        self.hostname = socket.gethostname()

    async def refresh(self) -> None:
        """Re-run local GPU detection."""
        self.gpu = await self.detector.detect()
        self.has_compile_worker = detect_compile_worker()
        logger.info(
            "sidecar_gpu_detected",
            vendor=self.gpu.vendor.value,
            vram_gb=self.gpu.vram_gb,
            source=self.gpu.source,
            exact=self.gpu.exact,
        )

    def report(self) -> CapabilityReport:
        """Capability report from the plugin config, falling back to the tier table."""
        plugin = read_plugin_config(self.settings.sidecar_config_file)
        try:
            configured = CapabilityDocument.model_validate(plugin)
        except ValidationError as e:
            logger.warning("plugin_config_invalid", error=str(e))
            configured = CapabilityDocument()

        tier = select_model_tier(self.gpu.vram_gb if self.gpu.counts_for_capacity else 0.0)
        return CapabilityReport(
            ollama_host=configured.ollama_host
            or (f"http://localhost:{self.settings.ollama_port}" if tier else None),
            primary_model=configured.primary_model or (tier.model if tier else None),
            sidecar_model=configured.sidecar_model
            if "sidecarModel" in plugin
            else (tier.sidecar_model if tier else None),
            fallback_model=configured.fallback_model or self.settings.remote_fallback_model,
            gpu_memory_threshold=configured.gpu_memory_threshold
            or self.settings.gpu_memory_threshold,
            gpu=self.gpu,
            has_compile_worker=self.has_compile_worker,
            hostname=self.hostname,
        )


def create_sidecar_app(
    settings: Optional[Settings] = None,
    detector: Optional[LocalGpuDetector] = None,
) -> FastAPI:
    """Create the sidecar FastAPI application."""
    settings = settings or get_settings()
    state = SidecarState(
        settings,
        detector or LocalGpuDetector(timeout=settings.gpu_query_timeout),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await state.refresh()
        yield

    async def verify_sidecar_key(x_sidecar_key: Optional[str] = Header(None)) -> None:
        """Validate the X-Sidecar-Key header when a key is configured."""
        if not settings.sidecar_key:
            return
        if x_sidecar_key is None or not secrets.compare_digest(
            x_sidecar_key, settings.sidecar_key
        ):
            raise HTTPException(status_code=401, detail="Invalid or missing sidecar key")

    app = FastAPI(
        title="fleetrouter capability sidecar",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.sidecar = state

    @app.get("/status")
    async def status():
        """Liveness endpoint."""
        return {"status": "ok", "hostname": state.hostname}

    @app.get("/capability")
    async def capability(_: None = Depends(verify_sidecar_key)):
        """This node's capability document."""
        document = CapabilityDocument.from_report(state.report())
        return document.model_dump(by_alias=True)

    @app.post("/refresh")
    async def refresh(_: None = Depends(verify_sidecar_key)):
        """Re-detect the GPU and return the new document."""
        await state.refresh()
        document = CapabilityDocument.from_report(state.report())
        return document.model_dump(by_alias=True)

    return app


def main():
    """Run the sidecar using uvicorn."""
    import uvicorn

    setup_logging()
    settings = get_settings()

    uvicorn.run(
        create_sidecar_app(settings),
        host=settings.host,
        port=settings.sidecar_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
