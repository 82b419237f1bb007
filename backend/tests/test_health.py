from datetime import datetime, timezone
import asyncio

import pytest

from nodeops.errors import ProbeError
from nodeops.utils.classification import SYNCING_MESSAGE, match_syncing_signature
from nodeops.utils.dependencies import DependencyGraph
from nodeops.utils.health import DEADLINE_MESSAGE, HealthProbeEngine, HealthStatus, RetryPolicy
from nodeops.utils.monitor import HealthMonitor
from nodeops.utils.registry import Protocol, ServiceRegistry

from conftest import FakeProbe, FakeRuntime, exited, make_service, refused, running

FIXED_NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_engine(services, runtime, probe, sleep, **kwargs):
    registry = ServiceRegistry(services)
    graph = DependencyGraph.build(registry)
    probes = {protocol: probe for protocol in Protocol}
    return HealthProbeEngine(
        registry=registry,
        graph=graph,
        runtime=runtime,
        probes=probes,
        sleep=sleep,
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


async def test_missing_container_is_stopped_without_probing(recording_sleep):
    probe = FakeProbe()
    engine = build_engine([make_service("app")], FakeRuntime(), probe, recording_sleep)

    snapshot = await engine.check_all()

    record = snapshot.get("app")
    assert record.status == HealthStatus.STOPPED
    assert record.docker_state == "not_running"
    assert probe.calls == {}


async def test_exited_container_is_stopped(recording_sleep):
    probe = FakeProbe()
    runtime = FakeRuntime({"app": exited("app")})
    engine = build_engine([make_service("app")], runtime, probe, recording_sleep)

    record = (await engine.check_all()).get("app")
    assert record.status == HealthStatus.STOPPED
    assert record.docker_state == "exited"
    assert record.docker_status.startswith("Exited")
    assert probe.calls == {}


async def test_healthy_service_reports_uptime_and_version(recording_sleep):
    runtime = FakeRuntime({"app": running("app")})
    engine = build_engine([make_service("app")], runtime, FakeProbe(), recording_sleep)

    record = (await engine.check_all()).get("app")
    assert record.status == HealthStatus.HEALTHY
    assert record.uptime_seconds == 120
    assert record.version == "1.2.3"
    assert record.error is None
    assert record.last_check == FIXED_NOW


async def test_retry_count_is_exact_and_backoff_grows(recording_sleep):
    probe = FakeProbe(always_fail={"app": refused()})
    runtime = FakeRuntime({"app": running("app")})
    engine = build_engine([make_service("app")], runtime, probe, recording_sleep)

    record = (await engine.check_all()).get("app")

    assert probe.calls["app"] == 3
    assert recording_sleep.delays == [1.0, 2.0]
    assert record.status == HealthStatus.UNHEALTHY
    assert record.error == "Connection refused"


async def test_success_after_retry_is_healthy(recording_sleep):
    probe = FakeProbe(failures={"app": [refused()]})
    runtime = FakeRuntime({"app": running("app")})
    engine = build_engine([make_service("app")], runtime, probe, recording_sleep)

    record = (await engine.check_all()).get("app")
    assert record.status == HealthStatus.HEALTHY
    assert probe.calls["app"] == 2
    assert recording_sleep.delays == [1.0]


def test_backoff_is_capped():
    policy = RetryPolicy(attempts=10, base_delay=1.0, max_delay=30.0)
    assert [policy.delay_for(i) for i in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


async def test_long_sync_node_refusing_connections_is_syncing(recording_sleep):
    node = make_service("kaspa-node", protocol=Protocol.STREAM_RPC, critical=True, long_sync=True)
    probe = FakeProbe(always_fail={"kaspa-node": refused()})
    runtime = FakeRuntime({"kaspa-node": running("kaspa-node")})
    engine = build_engine([node], runtime, probe, recording_sleep)

    record = (await engine.check_all()).get("kaspa-node")
    assert record.status == HealthStatus.SYNCING
    assert record.error == SYNCING_MESSAGE
    assert record.uptime_seconds == 120


async def test_same_failure_on_ordinary_service_is_unhealthy(recording_sleep):
    app = make_service("app", protocol=Protocol.STREAM_RPC)
    probe = FakeProbe(always_fail={"app": refused()})
    engine = build_engine([app], FakeRuntime({"app": running("app")}), probe, recording_sleep)

    record = (await engine.check_all()).get("app")
    assert record.status == HealthStatus.UNHEALTHY


async def test_bad_status_on_node_is_unhealthy(recording_sleep):
    node = make_service("kaspa-node", protocol=Protocol.STREAM_RPC, critical=True, long_sync=True)
    error = ProbeError("bad-status", "RPC health check failed with status 500")
    probe = FakeProbe(always_fail={"kaspa-node": error})
    engine = build_engine([node], FakeRuntime({"kaspa-node": running("kaspa-node")}), probe, recording_sleep)

    record = (await engine.check_all()).get("kaspa-node")
    assert record.status == HealthStatus.UNHEALTHY
    assert record.error == "RPC health check failed with status 500"


def test_syncing_signatures_need_critical_and_long_sync():
    timeout = ProbeError("timeout", "timeout")
    critical_only = make_service("n", protocol=Protocol.STREAM_RPC, critical=True)
    both = make_service("n", protocol=Protocol.STREAM_RPC, critical=True, long_sync=True)
    http_node = make_service("n", protocol=Protocol.HTTP, critical=True, long_sync=True)

    assert match_syncing_signature(critical_only, timeout) is None
    assert match_syncing_signature(both, timeout).name == "rpc-timeout"
    assert match_syncing_signature(http_node, timeout) is None


async def test_dependency_status_is_reported_alongside(recording_sleep):
    services = [make_service("api", dependencies=["db"]), make_service("db")]
    runtime = FakeRuntime({"api": running("api")})
    engine = build_engine(services, runtime, FakeProbe(), recording_sleep)

    snapshot = await engine.check_all()
    api = snapshot.get("api")

    assert api.status == HealthStatus.HEALTHY
    assert api.dependency_status.all_healthy is False
    assert [(d.name, d.healthy) for d in api.dependency_status.dependencies] == [("db", False)]
    assert snapshot.get("db").dependency_status.all_healthy is True


async def test_unexpected_error_is_isolated(recording_sleep):
    class BrokenRuntime(FakeRuntime):
        async def version_of(self, name):
            if name == "bad":
                raise RuntimeError("boom")
            return await super().version_of(name)

    runtime = BrokenRuntime({"bad": running("bad"), "good": running("good")})
    engine = build_engine([make_service("bad"), make_service("good")], runtime, FakeProbe(), recording_sleep)

    snapshot = await engine.check_all()
    assert snapshot.get("bad").status == HealthStatus.ERROR
    assert snapshot.get("bad").error == "boom"
    assert snapshot.get("good").status == HealthStatus.HEALTHY


async def test_runtime_listing_is_fetched_once_per_cycle(recording_sleep):
    services = [make_service(f"s{i}") for i in range(5)]
    runtime = FakeRuntime({s.name: running(s.name) for s in services})
    engine = build_engine(services, runtime, FakeProbe(), recording_sleep)

    await engine.check_all()
    assert runtime.list_calls == 1


async def test_snapshot_keeps_registry_order_and_summary(recording_sleep):
    services = [make_service("b"), make_service("a")]
    runtime = FakeRuntime({"b": running("b")})
    engine = build_engine(services, runtime, FakeProbe(), recording_sleep)

    snapshot = await engine.check_all()
    assert [r.name for r in snapshot.records] == ["b", "a"]
    summary = snapshot.summary()
    assert summary["healthy"] == 1
    assert summary["stopped"] == 1
    assert summary["total"] == 2


async def test_check_services_does_not_publish(recording_sleep):
    runtime = FakeRuntime({"app": running("app")})
    engine = build_engine([make_service("app")], runtime, FakeProbe(), recording_sleep)

    await engine.check_services(list(engine.registry))
    assert engine.snapshot.records == ()


async def test_deadline_keeps_previous_record(recording_sleep):
    runtime = FakeRuntime({"slow": running("slow"), "fast": running("fast")})
    probe = FakeProbe()
    engine = build_engine(
        [make_service("slow"), make_service("fast")], runtime, probe, recording_sleep, cycle_deadline=0.05
    )

    first = await engine.check_all()
    assert first.get("slow").status == HealthStatus.HEALTHY

    probe.hang.add("slow")
    second = await engine.check_all()
    assert second.get("slow") is first.get("slow")
    assert second.get("fast").status == HealthStatus.HEALTHY


async def test_deadline_without_previous_record_is_error(recording_sleep):
    runtime = FakeRuntime({"slow": running("slow")})
    engine = build_engine(
        [make_service("slow")], runtime, FakeProbe(hang={"slow"}), recording_sleep, cycle_deadline=0.05
    )

    record = (await engine.check_all()).get("slow")
    assert record.status == HealthStatus.ERROR
    assert record.error == DEADLINE_MESSAGE


async def test_missing_probe_is_unhealthy(recording_sleep):
    registry = ServiceRegistry([make_service("app")])
    engine = HealthProbeEngine(
        registry=registry,
        graph=DependencyGraph.build(registry),
        runtime=FakeRuntime({"app": running("app")}),
        probes={},
        sleep=recording_sleep,
    )

    record = (await engine.check_all()).get("app")
    assert record.status == HealthStatus.UNHEALTHY
    assert record.error == "Unknown service type: http"


async def test_record_to_dict(recording_sleep):
    runtime = FakeRuntime({"app": running("app")})
    engine = build_engine([make_service("app")], runtime, FakeProbe(), recording_sleep)

    data = (await engine.check_all()).get("app").to_dict()
    assert data["name"] == "app"
    assert data["status"] == "healthy"
    assert data["state"] == "running"
    assert data["last_check"] == FIXED_NOW.isoformat()
    assert data["dependency_status"] == {"all_healthy": True, "dependencies": []}


async def test_monitor_survives_failed_cycle(recording_sleep):
    class FailingEngine:
        snapshot = None

        async def check_all(self):
            raise RuntimeError("listing exploded")

    monitor = HealthMonitor(FailingEngine(), interval=1)
    assert await monitor.run_once() is None
    assert monitor.failed_cycles == 1
    assert monitor.cycles == 0


async def test_monitor_start_and_stop(recording_sleep):
    runtime = FakeRuntime({"app": running("app")})
    engine = build_engine([make_service("app")], runtime, FakeProbe(), recording_sleep)
    monitor = HealthMonitor(engine, interval=0.01)

    await monitor.start()
    assert monitor.running
    for _ in range(100):
        if monitor.cycles:
            break
        await asyncio.sleep(0.01)
    await monitor.stop()

    assert not monitor.running
    assert monitor.cycles >= 1
    assert engine.snapshot.get("app").status == HealthStatus.HEALTHY


def test_monitor_rejects_non_positive_interval(recording_sleep):
    with pytest.raises(ValueError):
        HealthMonitor(object(), interval=0)


async def test_non_probe_exception_is_retried_and_classified(recording_sleep):
    class RaisingProbe(FakeProbe):
        async def attempt(self, service):
            await super().attempt(service)
            raise ValueError("invalid URL")

    probe = RaisingProbe()
    engine = build_engine([make_service("app")], FakeRuntime({"app": running("app")}), probe, recording_sleep)

    record = (await engine.check_all()).get("app")
    assert probe.calls["app"] == 3
    assert record.status == HealthStatus.UNHEALTHY
    assert record.error == "invalid URL"


async def test_attempt_timeout_is_retried_then_syncing(recording_sleep):
    node = make_service("kaspa-node", protocol=Protocol.STREAM_RPC, critical=True, long_sync=True)
    probe = FakeProbe(hang={"kaspa-node"})
    engine = build_engine(
        [node],
        FakeRuntime({"kaspa-node": running("kaspa-node")}),
        probe,
        recording_sleep,
        retry=RetryPolicy(attempts=3, timeout=0.01),
    )

    record = (await engine.check_all()).get("kaspa-node")
    assert probe.calls["kaspa-node"] == 3
    assert recording_sleep.delays == [1.0, 2.0]
    assert record.status == HealthStatus.SYNCING


async def test_concurrency_bound_is_respected(recording_sleep):
    class CountingProbe(FakeProbe):
        def __init__(self):
            super().__init__()
            self.in_flight = 0
            self.peak = 0

        async def attempt(self, service):
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            try:
                await asyncio.sleep(0.01)
            finally:
                self.in_flight -= 1

    services = [make_service(f"s{i}") for i in range(10)]
    runtime = FakeRuntime({s.name: running(s.name) for s in services})
    probe = CountingProbe()
    engine = build_engine(services, runtime, probe, recording_sleep, max_concurrency=3)

    snapshot = await engine.check_all()
    assert probe.peak == 3
    assert all(r.status == HealthStatus.HEALTHY for r in snapshot.records)


async def test_passes_do_not_overlap(recording_sleep):
    class SlowRuntime(FakeRuntime):
        def __init__(self, processes):
            super().__init__(processes)
            self.in_flight = 0
            self.peak = 0

        async def list_live_processes(self):
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            try:
                await asyncio.sleep(0.01)
                return await super().list_live_processes()
            finally:
                self.in_flight -= 1

    runtime = SlowRuntime({"app": running("app")})
    engine = build_engine([make_service("app")], runtime, FakeProbe(), recording_sleep)

    first, second = await asyncio.gather(engine.check_all(), engine.check_all())
    assert runtime.peak == 1
    assert engine.snapshot is second
