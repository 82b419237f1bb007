"""Health probe engine.

One pass (`check_all`) fetches the runtime listing once, then checks every
service concurrently under a fixed concurrency bound:

- no running container       -> stopped, no probe
- probe succeeds             -> healthy, with uptime and version
- retries exhausted          -> syncing (named heuristics, see
                                nodeops.utils.classification) or unhealthy
- unexpected error           -> error, for that service only

Dependency liveness is reported next to the probe outcome, never merged
into it. The published snapshot is replaced as a whole at the end of a pass.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
import asyncio
import logging

from nodeops.errors import ProbeError
from nodeops.utils.classification import SYNCING_MESSAGE, match_syncing_signature
from nodeops.utils.dependencies import DependencyGraph
from nodeops.utils.probes import FailureKind, Probe, to_probe_error
from nodeops.utils.registry import ServiceDescriptor, ServiceRegistry
from nodeops.utils.runtime import ProcessInfo, RuntimeStatusCollector

logger = logging.getLogger(__name__)

DEADLINE_MESSAGE = "Health check did not complete before the cycle deadline"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass(frozen=True)
class DependencyHealth:
    name: str
    healthy: bool
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "healthy": self.healthy, "required": self.required}


@dataclass(frozen=True)
class DependencyStatus:
    all_healthy: bool
    dependencies: Tuple[DependencyHealth, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "all_healthy": self.all_healthy,
            "dependencies": [d.to_dict() for d in self.dependencies],
        }


@dataclass(frozen=True)
class HealthRecord:
    """Result of checking one service in one pass."""
    service: ServiceDescriptor
    status: HealthStatus
    last_check: datetime
    docker_state: str
    dependency_status: DependencyStatus
    docker_status: Optional[str] = None
    uptime_seconds: Optional[int] = None
    version: Optional[str] = None
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.service.name

    def to_dict(self) -> Dict[str, Any]:
        """Descriptor fields enriched with the health result."""
        data = self.service.to_dict()
        data.update({
            "status": self.status.value,
            "state": self.docker_state,
            "docker_status": self.docker_status,
            "last_check": self.last_check.isoformat(),
            "uptime": self.uptime_seconds,
            "version": self.version,
            "error": self.error,
            "dependency_status": self.dependency_status.to_dict(),
        })
        return data


@dataclass(frozen=True)
class HealthSnapshot:
    """Complete, immutable result of one pass."""
    records: Tuple[HealthRecord, ...] = ()
    taken_at: Optional[datetime] = None

    def get(self, name: str) -> Optional[HealthRecord]:
        for record in self.records:
            if record.name == name:
                return record
        return None

    def select(self, names: Iterable[str]) -> List[HealthRecord]:
        """Records for `names`, keeping snapshot order."""
        wanted = set(names)
        return [r for r in self.records if r.name in wanted]

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in HealthStatus}
        for record in self.records:
            counts[record.status.value] += 1
        counts["total"] = len(self.records)
        return counts


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed number of attempts with capped exponential backoff between attempts."""
    attempts: int = 3
    timeout: float = 5.0
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Wait after the failed attempt number `attempt` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HealthProbeEngine:
    """Runs health passes over the registry."""
    registry: ServiceRegistry
    graph: DependencyGraph
    runtime: RuntimeStatusCollector
    probes: Dict[Any, Probe]
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_concurrency: int = 8
    cycle_deadline: float = 60.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    clock: Callable[[], datetime] = _utcnow
    _snapshot: HealthSnapshot = field(default_factory=HealthSnapshot, init=False, repr=False)
    _pass_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def snapshot(self) -> HealthSnapshot:
        """The most recently published pass."""
        return self._snapshot

    async def check_all(self) -> HealthSnapshot:
        """Check every registered service and publish the result.

        Passes run one at a time, so a published snapshot is never replaced
        by an older one.
        """
        async with self._pass_lock:
            snapshot = await self.check_services(list(self.registry))
            self._snapshot = snapshot
        return snapshot

    async def check_services(self, services: List[ServiceDescriptor]) -> HealthSnapshot:
        """Check `services` without publishing the result."""
        processes = await self.runtime.list_live_processes()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(service: ServiceDescriptor) -> HealthRecord:
            async with semaphore:
                return await self._check_guarded(service, processes)

        tasks = [asyncio.create_task(bounded(service)) for service in services]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.cycle_deadline)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        records = []
        for service, task in zip(services, tasks):
            if task.done() and not task.cancelled():
                records.append(task.result())
                continue

            logger.warning(f"Health check for {service.name} abandoned at cycle deadline ({self.cycle_deadline}s)")
            previous = self._snapshot.get(service.name)
            if previous is None:
                previous = HealthRecord(
                    service=service,
                    status=HealthStatus.ERROR,
                    last_check=self.clock(),
                    docker_state=self._docker_state(processes.get(service.name)),
                    dependency_status=self.dependency_status(service, processes),
                    error=DEADLINE_MESSAGE,
                )
            records.append(previous)

        return HealthSnapshot(records=tuple(records), taken_at=self.clock())

    async def _check_guarded(self, service: ServiceDescriptor, processes: Dict[str, ProcessInfo]) -> HealthRecord:
        try:
            return await self.check_service(service, processes)
        except Exception as e:
            logger.exception(f"Unexpected error checking {service.name}")
            return HealthRecord(
                service=service,
                status=HealthStatus.ERROR,
                last_check=self.clock(),
                docker_state=self._docker_state(processes.get(service.name)),
                dependency_status=self.dependency_status(service, processes),
                error=str(e) or "Unknown error",
            )

    async def check_service(self, service: ServiceDescriptor, processes: Dict[str, ProcessInfo]) -> HealthRecord:
        """Check one service against the pass's runtime listing."""
        dependency_status = self.dependency_status(service, processes)
        info = processes.get(service.name)

        if info is None or not info.is_running:
            return HealthRecord(
                service=service,
                status=HealthStatus.STOPPED,
                last_check=self.clock(),
                docker_state=self._docker_state(info),
                docker_status=info.status_text if info else None,
                dependency_status=dependency_status,
            )

        try:
            await self.probe_with_retry(service)
        except ProbeError as e:
            signature = match_syncing_signature(service, e)
            if signature:
                logger.info(f"{service.name} classified as syncing ({signature.name}): {e.message}")
            else:
                logger.warning(f"Health check failed for {service.name}: {e.message}")

            return HealthRecord(
                service=service,
                status=HealthStatus.SYNCING if signature else HealthStatus.UNHEALTHY,
                last_check=self.clock(),
                docker_state=info.state,
                docker_status=info.status_text,
                dependency_status=dependency_status,
                uptime_seconds=await self.runtime.uptime_of(service.name),
                error=SYNCING_MESSAGE if signature else e.message,
            )

        uptime, version = await asyncio.gather(
            self.runtime.uptime_of(service.name),
            self.runtime.version_of(service.name),
        )
        return HealthRecord(
            service=service,
            status=HealthStatus.HEALTHY,
            last_check=self.clock(),
            docker_state=info.state,
            docker_status=info.status_text,
            dependency_status=dependency_status,
            uptime_seconds=uptime,
            version=version,
        )

    async def probe_with_retry(self, service: ServiceDescriptor) -> None:
        """Probe until success or every attempt has failed.

        Raises:
            ProbeError: The last attempt's failure.
        """
        probe = self.probes.get(service.protocol)
        if probe is None:
            raise ProbeError(FailureKind.OTHER.value, f"Unknown service type: {service.protocol.value}")

        last_error: Optional[ProbeError] = None
        for attempt in range(self.retry.attempts):
            try:
                await asyncio.wait_for(probe.attempt(service), self.retry.timeout)
                return
            except asyncio.TimeoutError:
                last_error = ProbeError(FailureKind.TIMEOUT.value, f"Probe timed out after {self.retry.timeout}s")
            except Exception as e:
                last_error = to_probe_error(e)

            if attempt < self.retry.attempts - 1:
                await self.sleep(self.retry.delay_for(attempt))

        raise last_error

    def dependency_status(self, service: ServiceDescriptor, processes: Dict[str, ProcessInfo]) -> DependencyStatus:
        """Liveness of each declared dependency from the runtime listing."""
        dependencies = tuple(
            DependencyHealth(name=dep, healthy=bool(processes.get(dep) and processes[dep].is_running))
            for dep in sorted(self.graph.dependencies_of(service.name))
        )
        return DependencyStatus(
            all_healthy=all(d.healthy for d in dependencies),
            dependencies=dependencies,
        )

    @staticmethod
    def _docker_state(info: Optional[ProcessInfo]) -> str:
        return info.state if info else "not_running"
