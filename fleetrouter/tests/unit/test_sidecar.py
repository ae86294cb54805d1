############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# test_sidecar.py: Unit tests for the capability sidecar agent
#
############################################################

"""Unit tests for the capability sidecar."""

import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from fleetrouter.sidecar.agent import create_sidecar_app, read_plugin_config
from fleetrouter.core.schemas import CapabilityDocument
from fleetrouter.core.telemetry.models import GpuReading, GpuVendor
from fleetrouter.settings import Settings


class FakeDetector:
    def __init__(self, reading: GpuReading):
        self.reading = reading
        self.calls = 0

    async def detect(self) -> GpuReading:
        self.calls += 1
        return self.reading


RTX_4080 = GpuReading(vendor=GpuVendor.NVIDIA, vram_gb=16.0, name="RTX 4080", source="nvml", exact=True)


def write_openclaw(path, config, enabled=True):
    path.write_text(json.dumps({
        "plugins": {
            "entries": {
                "model-load-optimizer": {"enabled": enabled, "config": config},
            }
        }
    }))


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "openclaw.json"


@pytest.fixture
def make_client(config_path):
    clients = []

    def _make(reading=RTX_4080, sidecar_key=None):
        settings = Settings(
            _env_file=None,
            sidecar_config_file=str(config_path),
            sidecar_key=sidecar_key,
        )
        detector = FakeDetector(reading)
        app = create_sidecar_app(settings, detector=detector)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, detector

    with patch("fleetrouter.sidecar.agent.detect_compile_worker", return_value=True):
        yield _make
        for client in clients:
            client.__exit__(None, None, None)


class TestPluginConfig:
    def test_missing_file(self, config_path):
        assert read_plugin_config(str(config_path)) == {}

    def test_reads_config_block(self, config_path):
        write_openclaw(config_path, {"primaryModel": "ollama/qwen2.5-coder:7b"})
        assert read_plugin_config(str(config_path)) == {"primaryModel": "ollama/qwen2.5-coder:7b"}

    def test_disabled_plugin(self, config_path):
        write_openclaw(config_path, {"primaryModel": "x"}, enabled=False)
        assert read_plugin_config(str(config_path)) == {}

    def test_malformed_file(self, config_path):
        config_path.write_text("{not json")
        assert read_plugin_config(str(config_path)) == {}


class TestSidecarEndpoints:
    def test_status(self, make_client):
        client, _ = make_client()
        response = client.get("/status")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_capability_from_tier_table(self, make_client):
        client, _ = make_client()
        data = client.get("/capability").json()

        assert data["gpuVendor"] == "NVIDIA"
        assert data["vramGb"] == 16.0
        assert data["primaryModel"] == "deepseek-coder-v2:16b"
        assert data["sidecarModel"] == "qwen2.5-coder:7b"
        assert data["fallbackModel"] == "anthropic/claude-sonnet-4-5"
        assert data["ollamaHost"] == "http://localhost:11434"
        assert data["gpuMemoryThreshold"] == 0.85
        assert data["hasCompileWorker"] is True

    def test_capability_from_plugin_block(self, make_client, config_path):
        write_openclaw(config_path, {
            "ollamaHost": "http://127.0.0.1:11434",
            "primaryModel": "ollama/deepseek-coder-v2:lite",
            "sidecarModel": "",
            "fallbackModel": "anthropic/claude-opus-4",
            "gpuMemoryThreshold": 0.9,
        })
        client, _ = make_client()
        data = client.get("/capability").json()

        assert data["primaryModel"] == "ollama/deepseek-coder-v2:lite"
        assert data["sidecarModel"] is None
        assert data["fallbackModel"] == "anthropic/claude-opus-4"
        assert data["gpuMemoryThreshold"] == 0.9

    def test_no_gpu_has_no_local_model(self, make_client):
        client, _ = make_client(reading=GpuReading())
        data = client.get("/capability").json()

        assert data["primaryModel"] is None
        assert data["ollamaHost"] is None
        assert data["fallbackModel"] == "anthropic/claude-sonnet-4-5"

    def test_document_round_trips_to_report(self, make_client):
        client, _ = make_client()
        report = CapabilityDocument.model_validate(client.get("/capability").json()).to_report()

        assert report.gpu.vendor == GpuVendor.NVIDIA
        assert report.gpu.vram_gb == 16.0

    def test_refresh_redetects(self, make_client):
        client, detector = make_client()
        assert detector.calls == 1

        response = client.post("/refresh")

        assert response.status_code == 200
        assert detector.calls == 2


class TestSidecarKey:
    def test_missing_key_rejected(self, make_client):
        client, _ = make_client(sidecar_key="s3cret")
        assert client.get("/capability").status_code == 401

    def test_wrong_key_rejected(self, make_client):
        client, _ = make_client(sidecar_key="s3cret")
        response = client.get("/capability", headers={"X-Sidecar-Key": "nope"})
        assert response.status_code == 401

    def test_valid_key(self, make_client):
        client, _ = make_client(sidecar_key="s3cret")
        response = client.get("/capability", headers={"X-Sidecar-Key": "s3cret"})
        assert response.status_code == 200

    def test_status_needs_no_key(self, make_client):
        client, _ = make_client(sidecar_key="s3cret")
        assert client.get("/status").status_code == 200
