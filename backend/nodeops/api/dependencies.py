"""Request dependencies exposing the orchestration components built at startup."""
from fastapi import HTTPException, Request
import logging

from nodeops.utils.dependencies import DependencyGraph
from nodeops.utils.health import HealthProbeEngine
from nodeops.utils.profiles import ProfileResolver
from nodeops.utils.registry import ServiceRegistry
from nodeops.utils.restart import RestartOrchestrator

logger = logging.getLogger(__name__)


def _component(request: Request, attr: str):
    component = getattr(request.app.state, attr, None)
    if component is None:
        logger.error(f"Component '{attr}' requested before startup completed")
        raise HTTPException(status_code=503, detail="Service orchestration is not initialized")
    return component


def get_registry(request: Request) -> ServiceRegistry:
    return _component(request, "registry")


def get_graph(request: Request) -> DependencyGraph:
    return _component(request, "graph")


def get_resolver(request: Request) -> ProfileResolver:
    return _component(request, "resolver")


def get_engine(request: Request) -> HealthProbeEngine:
    return _component(request, "engine")


def get_orchestrator(request: Request) -> RestartOrchestrator:
    return _component(request, "orchestrator")
