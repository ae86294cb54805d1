############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# test_aggregator.py: Unit tests for probe cycles and snapshot publication
#
############################################################

"""Unit tests for HealthAggregator and FleetQueryService."""

import asyncio

import pytest

from fleetrouter.core.fleet_config import build_definition
from fleetrouter.core.query import build_service
from fleetrouter.core.telemetry.aggregator import CycleState
from fleetrouter.core.telemetry.models import (
    BackendKind,
    CapabilityReport,
    GpuReading,
    GpuVendor,
    HealthState,
)
from fleetrouter.errors import UnknownNode


@pytest.fixture
def service(fleet_document, settings, fake_prober):
    definition = build_definition(fleet_document, settings)
    return build_service(definition, settings, prober=fake_prober)


def health_of(snapshot):
    return {n.name: n.health for n in snapshot.nodes}


class TestInitialSnapshot:
    @pytest.mark.asyncio
    async def test_initial_snapshot_is_all_unknown(self, service, fake_prober):
        snapshot = await service.aggregator.initialize()

        assert snapshot.cycle == 0
        assert set(health_of(snapshot).values()) == {HealthState.UNKNOWN}
        assert fake_prober.calls == []
        assert snapshot.backends[-1].kind == BackendKind.REMOTE_API

    @pytest.mark.asyncio
    async def test_unknown_nodes_route_to_fallback(self, service):
        await service.aggregator.initialize()
        decision = service.route("nodeA")
        assert decision.fallback_only


class TestCycle:
    @pytest.mark.asyncio
    async def test_cycle_marks_nodes_up_and_publishes(self, service, fake_prober):
        await service.aggregator.initialize()
        snapshot = await service.aggregator.run_cycle()

        assert snapshot.cycle == 1
        assert snapshot.complete
        assert set(health_of(snapshot).values()) == {HealthState.UP}
        assert sorted(fake_prober.calls) == ["nodeA", "nodeB", "nodeC"]
        assert service.aggregator.latest is snapshot
        assert service.aggregator.state == CycleState.IDLE

    @pytest.mark.asyncio
    async def test_down_after_threshold_cycles(self, service, fake_prober, settings):
        await service.aggregator.initialize()
        await service.aggregator.run_cycle()
        fake_prober.down.add("nodeB")

        for _ in range(settings.down_threshold - 1):
            snapshot = await service.aggregator.run_cycle()
            assert health_of(snapshot)["nodeB"] == HealthState.UP

        snapshot = await service.aggregator.run_cycle()
        assert health_of(snapshot)["nodeB"] == HealthState.DOWN

    @pytest.mark.asyncio
    async def test_vram_change_shows_in_next_snapshot(self, service, fake_prober):
        await service.aggregator.initialize()
        fake_prober.gpu["nodeC"] = GpuReading(vendor=GpuVendor.NVIDIA, vram_gb=12, exact=True)
        snapshot = await service.aggregator.run_cycle()

        node_c = snapshot.get_node("nodeC")
        assert node_c.capabilities.vram_gb == 12
        assert "local:nodeC:deepseek-coder-v2:16b" in {b.id for b in snapshot.backends}

    @pytest.mark.asyncio
    async def test_probes_are_bounded(self, settings, fake_prober):
        settings.max_in_flight_probes = 2
        document = {
            "nodes": [{"name": f"n{i}", "address": f"10.0.0.{i}"} for i in range(8)]
        }
        definition = build_definition(document, settings)
        service = build_service(definition, settings, prober=fake_prober)
        fake_prober.delay = 0.02

        await service.aggregator.initialize()
        await service.aggregator.run_cycle()

        assert len(fake_prober.calls) == 8
        assert fake_prober.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_cycles_do_not_overlap(self, service, fake_prober):
        await service.aggregator.initialize()
        fake_prober.delay = 0.02

        first, second = await asyncio.gather(
            service.aggregator.run_cycle(),
            service.aggregator.run_cycle(),
        )
        assert {first.cycle, second.cycle} == {1, 2}
        assert fake_prober.max_in_flight <= 3


class TestDeadline:
    @pytest.mark.asyncio
    async def test_stalled_probe_keeps_prior_state(self, service, fake_prober):
        await service.aggregator.initialize()
        await service.aggregator.run_cycle()
        before = service.aggregator.latest.get_node("nodeB")

        fake_prober.stall.add("nodeB")
        fake_prober.down.add("nodeA")
        snapshot = await service.aggregator.run_cycle(deadline=0.1)

        assert not snapshot.complete
        assert snapshot.unresolved == ("nodeB",)
        node_b = snapshot.get_node("nodeB")
        assert node_b.health == HealthState.UP
        assert node_b.last_seen == before.last_seen
        assert node_b.consecutive_failures == 0
        # resolved nodes are still applied
        assert snapshot.get_node("nodeA").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_query_during_stalled_cycle(self, service, fake_prober):
        await service.aggregator.initialize()
        fake_prober.stall.add("nodeA")

        cycle = asyncio.create_task(service.aggregator.run_cycle(deadline=30))
        await asyncio.sleep(0.05)

        assert service.aggregator.state == CycleState.PROBING
        view = service.current()
        assert view.snapshot.cycle == 0
        assert view.age_seconds > 0

        cycle.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cycle
        assert service.aggregator.state == CycleState.IDLE


class TestQueryService:
    @pytest.mark.asyncio
    async def test_deregister_republishes(self, service, fake_prober):
        await service.aggregator.initialize()
        await service.deregister("nodeC")

        assert service.current().snapshot.get_node("nodeC") is None
        assert fake_prober.forgotten == ["nodeC"]
        with pytest.raises(UnknownNode):
            await service.deregister("nodeC")

    @pytest.mark.asyncio
    async def test_deregistered_node_is_not_probed_again(self, service, fake_prober):
        await service.aggregator.initialize()
        await service.deregister("nodeC")
        await service.aggregator.run_cycle()
        assert "nodeC" not in fake_prober.calls

    @pytest.mark.asyncio
    async def test_deregister_during_cycle_is_not_undone(self, service, fake_prober):
        await service.aggregator.initialize()
        fake_prober.delay = 0.2
        cycle = asyncio.create_task(service.aggregator.run_cycle())
        await asyncio.sleep(0.05)

        await service.deregister("nodeC")
        snapshot = await cycle

        assert "nodeC" in fake_prober.calls
        assert snapshot.get_node("nodeC") is None
        assert sorted(health_of(snapshot)) == ["nodeA", "nodeB"]
        assert "nodeC" in fake_prober.forgotten

    @pytest.mark.asyncio
    async def test_report_capability(self, service):
        await service.aggregator.initialize()
        await service.aggregator.run_cycle()

        report = CapabilityReport(
            primary_model="deepseek-coder:6.7b",
            gpu=GpuReading(vendor=GpuVendor.NVIDIA, vram_gb=6, exact=True),
        )
        await service.report_capability("nodeC", report)

        decision = service.route("nodeC")
        assert decision.primary.id == "local:nodeC:deepseek-coder:6.7b"

    @pytest.mark.asyncio
    async def test_report_for_unknown_node(self, service):
        await service.aggregator.initialize()
        with pytest.raises(UnknownNode):
            await service.report_capability("ghost", CapabilityReport())

    @pytest.mark.asyncio
    async def test_start_and_stop(self, service, fake_prober):
        await service.aggregator.start()
        await asyncio.sleep(0.05)
        assert service.aggregator.running
        assert service.aggregator.latest.cycle >= 1

        await service.aggregator.stop()
        assert not service.aggregator.running
        assert fake_prober.closed
