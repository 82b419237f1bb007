"""Shared fakes and fixtures."""
from typing import Dict, List, Optional
import asyncio

import pytest

from nodeops.config import DEFAULT_REGISTRY_PATH
from nodeops.errors import ProbeError, RuntimeCommandError
from nodeops.utils.dependencies import DependencyGraph
from nodeops.utils.probes import Probe
from nodeops.utils.registry import Endpoint, Protocol, ServiceDescriptor, ServiceRegistry, load_registry
from nodeops.utils.runtime import ProcessInfo, RuntimeStatusCollector


def make_service(
    name: str,
    protocol: Protocol = Protocol.HTTP,
    dependencies=(),
    profile: str = "test",
    critical: bool = False,
    long_sync: bool = False,
    url: Optional[str] = None,
) -> ServiceDescriptor:
    return ServiceDescriptor(
        name=name,
        display_name=name.title(),
        endpoint=Endpoint(url=url or f"http://{name}:8080", protocol=protocol),
        profile=profile,
        dependencies=tuple(dependencies),
        critical=critical,
        long_sync=long_sync,
    )


def running(name: str, image: str = "kaspanet/app:1.2.3") -> ProcessInfo:
    return ProcessInfo(name=name, state="running", status_text="Up 5 minutes", image=image)


def exited(name: str) -> ProcessInfo:
    return ProcessInfo(name=name, state="exited", status_text="Exited (1) 2 minutes ago", image="kaspanet/app:1.2.3")


class FakeRuntime(RuntimeStatusCollector):
    """In-memory runtime. Restarts are recorded; names in `fail_restart` fail."""

    def __init__(self, processes: Optional[Dict[str, ProcessInfo]] = None, fail_restart=()):
        self.processes = dict(processes or {})
        self.fail_restart = set(fail_restart)
        self.restarted: List[str] = []
        self.exec_calls: List[tuple] = []
        self.exec_error: Optional[str] = None
        self.list_calls = 0

    async def list_live_processes(self) -> Dict[str, ProcessInfo]:
        self.list_calls += 1
        return dict(self.processes)

    async def uptime_of(self, name: str) -> Optional[int]:
        return 120 if name in self.processes else None

    async def version_of(self, name: str) -> Optional[str]:
        return "1.2.3" if name in self.processes else None

    async def restart(self, name: str) -> None:
        if name in self.fail_restart:
            raise RuntimeCommandError(f"docker restart {name}", "No such container")
        self.restarted.append(name)

    async def exec(self, name: str, argv: List[str], timeout: Optional[float] = None) -> str:
        self.exec_calls.append((name, list(argv)))
        if self.exec_error:
            raise RuntimeCommandError(f"docker exec {name}", self.exec_error)
        return "localhost:5432 - accepting connections\n"


class FakeProbe(Probe):
    """Probe whose outcome per service is scripted.

    `failures[name]` is a list of ProbeErrors raised on successive attempts;
    once exhausted the attempt succeeds. `always_fail[name]` fails every time.
    `hang` holds names whose attempts never finish.
    """

    def __init__(self, failures=None, always_fail=None, hang=()):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.always_fail = dict(always_fail or {})
        self.hang = set(hang)
        self.calls: Dict[str, int] = {}

    async def attempt(self, service: ServiceDescriptor) -> None:
        self.calls[service.name] = self.calls.get(service.name, 0) + 1
        if service.name in self.hang:
            await asyncio.Event().wait()
        if service.name in self.always_fail:
            raise self.always_fail[service.name]
        pending = self.failures.get(service.name)
        if pending:
            raise pending.pop(0)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def refused(message: str = "Connection refused") -> ProbeError:
    return ProbeError("connection-refused", message)


@pytest.fixture
def bundled_registry() -> ServiceRegistry:
    return load_registry(DEFAULT_REGISTRY_PATH)


@pytest.fixture
def bundled_graph(bundled_registry) -> DependencyGraph:
    return DependencyGraph.build(bundled_registry)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
