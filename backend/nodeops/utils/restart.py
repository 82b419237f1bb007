"""Selective, dependency-ordered restarts after a configuration change."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
import asyncio
import logging

from nodeops.errors import RuntimeCommandError
from nodeops.utils.dependencies import DependencyGraph
from nodeops.utils.profiles import ProfileResolver
from nodeops.utils.registry import ServiceRegistry
from nodeops.utils.runtime import RuntimeStatusCollector

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    """Why a service shows up in a change set."""
    PROFILE_ADDED = "profile-added"
    PROFILE_REMOVED = "profile-removed"
    CONFIGURATION = "configuration"


class ProfileAction(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass(frozen=True)
class ProfileChange:
    """A profile-level change.

    `services` lists the affected services explicitly; when None, the
    profile's registered members are used.
    """
    action: ProfileAction
    services: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class SkippedService:
    service: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"service": self.service, "reason": self.reason}


@dataclass(frozen=True)
class FailedService:
    service: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"service": self.service, "error": self.error}


@dataclass(frozen=True)
class RestartPlan:
    """Services to restart in dependency order, plus what was left out."""
    order: Tuple[str, ...]
    skipped: Tuple[SkippedService, ...] = ()
    requested: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested": list(self.requested),
            "order": list(self.order),
            "skipped": [s.to_dict() for s in self.skipped],
        }


@dataclass
class RestartResult:
    restarted: List[str] = field(default_factory=list)
    failed: List[FailedService] = field(default_factory=list)
    skipped: List[SkippedService] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restarted": list(self.restarted),
            "failed": [f.to_dict() for f in self.failed],
            "skipped": [s.to_dict() for s in self.skipped],
        }


class RestartOrchestrator:
    """Plans and runs restarts one service at a time.

    Restarts are never parallel: ordering guarantees come from walking the
    dependency-sorted plan with a pause between steps.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        graph: DependencyGraph,
        resolver: ProfileResolver,
        runtime: RuntimeStatusCollector,
        restart_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.graph = graph
        self.resolver = resolver
        self.runtime = runtime
        self.restart_delay = restart_delay
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def _members(self, profile_id: str, change: ProfileChange) -> List[str]:
        if change.services is not None:
            return list(change.services)
        return [s.name for s in self.resolver.resolve(profile_id)]

    def classify(self, service_name: str, profile_changes: Dict[str, ProfileChange]) -> ChangeKind:
        """Determine the type of change for a service."""
        for profile_id, change in profile_changes.items():
            if change.action == ProfileAction.MODIFIED:
                continue
            if service_name not in self._members(profile_id, change):
                continue
            if change.action == ProfileAction.ADDED:
                return ChangeKind.PROFILE_ADDED
            return ChangeKind.PROFILE_REMOVED

        return ChangeKind.CONFIGURATION

    def plan_restart(
        self,
        changed_names: Iterable[str],
        profile_changes: Optional[Dict[str, ProfileChange]] = None,
    ) -> RestartPlan:
        """Classify a change set and order the services that need a restart.

        Raises:
            CycleError: If the services to restart contain a dependency cycle.
        """
        profile_changes = profile_changes or {}
        requested = tuple(dict.fromkeys(changed_names))
        included: List[str] = []
        skipped: List[SkippedService] = []

        for name in requested:
            if name not in self.registry:
                skipped.append(SkippedService(name, "Not a managed service"))
                continue

            kind = self.classify(name, profile_changes)
            if kind == ChangeKind.CONFIGURATION:
                included.append(name)
            elif kind == ChangeKind.PROFILE_ADDED:
                # New services will be started by the runtime, not restarted
                skipped.append(SkippedService(name, "New service - will be started automatically"))
            else:
                skipped.append(SkippedService(name, f"Change type '{kind.value}' does not require restart"))

        order = self.graph.topological_order(included)
        return RestartPlan(order=tuple(order), skipped=tuple(skipped), requested=requested)

    async def execute(self, plan: RestartPlan) -> RestartResult:
        """Restart each planned service in order; failures do not stop the plan.

        Plans run one at a time; a second plan waits for the first to finish.
        """
        async with self._lock:
            return await self._execute(plan)

    async def _execute(self, plan: RestartPlan) -> RestartResult:
        result = RestartResult(skipped=list(plan.skipped))

        for index, service_name in enumerate(plan.order):
            if index > 0 and self.restart_delay > 0:
                await self._sleep(self.restart_delay)

            logger.info(f"Restarting changed service: {service_name}")
            try:
                await self.runtime.restart(service_name)
            except RuntimeCommandError as e:
                logger.error(f"Failed to restart service {service_name}: {e.reason}")
                result.failed.append(FailedService(service_name, e.reason))
                continue
            except Exception as e:
                logger.exception(f"Failed to restart service {service_name}")
                result.failed.append(FailedService(service_name, str(e) or type(e).__name__))
                continue

            result.restarted.append(service_name)

        logger.info(
            f"Restart finished: {len(result.restarted)} restarted, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )
        return result

    async def restart_changed(
        self,
        changed_names: Iterable[str],
        profile_changes: Optional[Dict[str, ProfileChange]] = None,
    ) -> RestartResult:
        """Plan and execute in one call."""
        plan = self.plan_restart(changed_names, profile_changes)
        return await self.execute(plan)
