############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# settings.py: Application configuration and environment settings
#
############################################################

"""Application settings using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_version() -> str:
    """Read version from pyproject.toml (single source of truth)."""
    try:
        from importlib.metadata import version
        return version("fleetrouter")
    except Exception:
        pass
    # Fallback: read pyproject.toml directly (works in dev without pip install)
    try:
        import tomllib
        toml_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except Exception:
        return "0.0.0"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_file=(".env", ".env.prod"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "fleetrouter"
    app_version: str = Field(default_factory=_get_version)
    debug: bool = False
    reload: bool = False
    host: str = "0.0.0.0"
    port: int = 8090

    # Fleet definition
    fleet_file: str = "fleet.json"
    local_node_name: Optional[str] = None

    # Probing
    agent_port: int = 3284
    status_path: str = "/status"
    capability_port: int = 3285
    capability_path: str = "/capability"
    probe_timeout: float = 3.0
    gpu_query_timeout: float = 10.0

    # Health aggregation
    poll_interval: float = 30.0
    max_in_flight_probes: int = 10
    down_threshold: int = 3
    # Deadline for a full probe cycle; defaults to 2x poll_interval
    cycle_deadline: Optional[float] = None

    # Routing
    lan_ranges: List[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "100.64.0.0/10",  # Tailscale CGNAT range
    ]
    remote_fallback_model: str = "anthropic/claude-sonnet-4-5"
    allow_metered_default: bool = False
    gpu_memory_threshold: float = 0.85
    ollama_port: int = 11434

    # Capability sidecar
    sidecar_key: Optional[str] = None
    sidecar_port: int = 3285
    # openclaw.json holding the model-load-optimizer plugin block
    sidecar_config_file: str = "~/.openclaw/openclaw.json"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None

    # Observability
    metrics_enabled: bool = True

    @field_validator("lan_ranges", mode="before")
    @classmethod
    def parse_lan_ranges(cls, v):
        """Parse LAN ranges from a JSON list or a comma separated string."""
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [cidr.strip() for cidr in v.split(",") if cidr.strip()]
        return v

    @property
    def effective_cycle_deadline(self) -> float:
        """Deadline for one aggregation cycle in seconds."""
        if self.cycle_deadline is not None:
            return self.cycle_deadline
        return self.poll_interval * 2


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
