############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# test_cli.py: Unit tests for the command line interface
#
############################################################

"""Unit tests for the fleetrouter CLI."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fleetrouter import cli
from fleetrouter.core.fleet_config import build_definition
from fleetrouter.core.query import build_service
from fleetrouter.core.telemetry.models import GpuReading, GpuVendor


@pytest.fixture
def fleet_file(tmp_path, fleet_document):
    path = tmp_path / "fleet.json"
    path.write_text(json.dumps(fleet_document))
    return path


@pytest.fixture
def probe_once(fleet_document, settings, fake_prober):
    """Replace the real probe cycle with one driven by the fake prober."""

    async def _probe_once(fleet_file):
        definition = build_definition(fleet_document, settings)
        service = build_service(definition, settings, prober=fake_prober)
        await service.aggregator.initialize()
        await service.aggregator.run_cycle()
        await service.aggregator.stop()
        return service

    with patch.object(cli, "_probe_once", _probe_once):
        yield fake_prober


class TestStatus:
    def test_status_text(self, fleet_file, probe_once, capsys):
        code = cli.main(["--fleet-file", str(fleet_file), "status"])
        out = capsys.readouterr().out

        assert code == 0
        assert "3/3 nodes up" in out
        assert "nodeA" in out and "Large" in out

    def test_status_json(self, fleet_file, probe_once, capsys):
        code = cli.main(["--fleet-file", str(fleet_file), "--json", "status"])
        data = json.loads(capsys.readouterr().out)

        assert code == 0
        assert data["summary"]["up"] == 3

    def test_no_nodes_reachable(self, fleet_file, probe_once, capsys):
        probe_once.down.update({"nodeA", "nodeB", "nodeC"})
        code = cli.main(["--fleet-file", str(fleet_file), "status"])
        err = capsys.readouterr().err

        assert code == 2
        assert "no nodes reachable" in err
        assert "Traceback" not in err

    def test_invalid_fleet_file(self, tmp_path, capsys):
        path = tmp_path / "fleet.json"
        path.write_text('{"nodes": [{"name": "a"}]}')
        code = cli.main(["--fleet-file", str(path), "status"])
        err = capsys.readouterr().err

        assert code == 1
        assert err.startswith("fleetrouter: invalid fleet configuration")
        assert "nodes[0] a" in err
        assert len(err.strip().splitlines()) == 1

    def test_missing_fleet_file(self, tmp_path, capsys):
        code = cli.main(["--fleet-file", str(tmp_path / "absent.json"), "status"])
        assert code == 1
        assert "cannot read fleet file" in capsys.readouterr().err


class TestRoute:
    def test_route_gpu_node(self, fleet_file, probe_once, capsys):
        code = cli.main(["--fleet-file", str(fleet_file), "route", "nodeA"])
        out = capsys.readouterr().out

        assert code == 0
        assert "route for nodeA (same_node)" in out
        assert "anthropic/claude-sonnet-4-5" in out

    def test_route_fallback_only(self, fleet_file, probe_once, capsys):
        probe_once.down.update({"nodeA", "nodeB", "nodeC"})
        code = cli.main(["--fleet-file", str(fleet_file), "--json", "route", "nodeC"])
        captured = capsys.readouterr()

        assert code == 2
        assert json.loads(captured.out)["fallbackOnly"] is True
        assert "returning remote fallback only" in captured.err

    def test_fallback_only_with_nodes_up(self, fleet_file, fleet_document, probe_once, capsys):
        # nodeC has no GPU and there is no LAN server to share
        fleet_document["backends"] = []
        code = cli.main(["--fleet-file", str(fleet_file), "--json", "route", "nodeC"])
        captured = capsys.readouterr()

        assert code == 0
        assert json.loads(captured.out)["fallbackOnly"] is True
        assert "no nodes reachable" not in captured.err
        assert "using remote fallback" in captured.err

    def test_route_bad_hint(self, fleet_file, probe_once, capsys):
        code = cli.main(["--fleet-file", str(fleet_file), "route", "nodeA", "min-tier=Huge"])
        assert code == 1
        assert "unknown tier" in capsys.readouterr().err

    @pytest.mark.parametrize("nodes_up, expected", [(0, 2), (2, 0)])
    def test_route_via_server(self, nodes_up, expected, capsys):
        decision = MagicMock(status_code=200)
        decision.json.return_value = {
            "requestingNode": "nodeC",
            "workloadHint": "",
            "reason": "no_backends_available",
            "fallbackOnly": True,
            "snapshotTakenAt": None,
            "backends": [{
                "id": "remote:anthropic/claude-sonnet-4-5",
                "kind": "RemoteApi",
                "model": "anthropic/claude-sonnet-4-5",
                "node": None,
                "role": "fallback",
                "costTier": "Metered",
                "tokensPerSec": None,
                "endpoint": None,
            }],
            "excluded": [],
        }
        snapshot = MagicMock(status_code=200)
        snapshot.json.return_value = {"summary": {"nodes": 3, "up": nodes_up, "down": 0, "backends": 1}}

        def fake_get(url, **kwargs):
            return snapshot if url.endswith("/snapshot") else decision

        with patch.object(cli.httpx, "get", side_effect=fake_get) as get:
            code = cli.main(["--server", "http://orchestrator:8090", "route", "nodeC"])

        assert code == expected
        assert get.call_args_list[0][0][0] == "http://orchestrator:8090/api/fleet/route/nodeC"
        assert "1. anthropic/claude-sonnet-4-5" in capsys.readouterr().out

    def test_server_unreachable(self, capsys):
        error = cli.httpx.ConnectError("connection refused")
        with patch.object(cli.httpx, "get", side_effect=error):
            code = cli.main(["--server", "http://orchestrator:8090", "status"])

        assert code == 2
        assert "cannot reach fleetrouter" in capsys.readouterr().err


class TestDetect:
    def test_detect_prints_tier(self, capsys):
        detector = MagicMock()
        detector.detect = AsyncMock(return_value=GpuReading(
            vendor=GpuVendor.NVIDIA, vram_gb=8.0, name="RTX 3070", source="nvml", exact=True,
        ))
        with patch.object(cli, "LocalGpuDetector", return_value=detector), \
                patch.object(cli, "detect_compile_worker", return_value=False):
            code = cli.main(["detect"])
        out = capsys.readouterr().out

        assert code == 0
        assert "Medium" in out
        assert "deepseek-coder-v2:lite" in out

    def test_detect_without_gpu(self, capsys):
        detector = MagicMock()
        detector.detect = AsyncMock(return_value=GpuReading())
        with patch.object(cli, "LocalGpuDetector", return_value=detector), \
                patch.object(cli, "detect_compile_worker", return_value=False):
            code = cli.main(["--json", "detect"])
        data = json.loads(capsys.readouterr().out)

        assert code == 0
        assert data["tier"] is None
        assert data["countsForCapacity"] is False
