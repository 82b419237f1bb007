"""Service health and dependency endpoints."""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional
import logging

from nodeops.errors import CycleError
from nodeops.api.dependencies import get_engine, get_graph, get_registry, get_resolver
from nodeops.utils.dependencies import DependencyGraph
from nodeops.utils.health import HealthProbeEngine, HealthSnapshot
from nodeops.utils.profiles import ProfileResolver
from nodeops.utils.registry import ServiceRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/services", tags=["Services"])


class ServiceDependenciesResponse(BaseModel):
    service: str
    dependencies: List[str]
    dependents: List[str]
    transitive: List[str]


class StartupOrderRequest(BaseModel):
    services: List[str]


class StartupOrderResponse(BaseModel):
    order: List[str]


def _snapshot_response(snapshot: HealthSnapshot, names: Optional[List[str]] = None) -> dict:
    records = snapshot.records if names is None else snapshot.select(names)
    return {
        "taken_at": snapshot.taken_at.isoformat() if snapshot.taken_at else None,
        "summary": snapshot.summary(),
        "services": [record.to_dict() for record in records],
    }


@router.get("")
async def list_services(
    profile: Optional[str] = None,
    engine: HealthProbeEngine = Depends(get_engine),
    resolver: ProfileResolver = Depends(get_resolver),
):
    """Latest health snapshot, optionally narrowed to one profile."""
    names = None
    if profile:
        names = [s.name for s in resolver.resolve(profile)]
    return _snapshot_response(engine.snapshot, names)


@router.post("/check")
async def check_services(engine: HealthProbeEngine = Depends(get_engine)):
    """Run a full health pass now and return it."""
    logger.info("Manual health check requested")
    snapshot = await engine.check_all()
    return _snapshot_response(snapshot)


@router.post("/startup-order", response_model=StartupOrderResponse)
async def startup_order(data: StartupOrderRequest, graph: DependencyGraph = Depends(get_graph)):
    """Order a set of services so dependencies come first."""
    try:
        order = graph.topological_order(data.services)
    except CycleError as e:
        logger.warning(f"Startup order rejected: {e.message}")
        raise HTTPException(status_code=409, detail=e.to_dict())
    return StartupOrderResponse(order=order)


@router.get("/{name}")
async def get_service(
    name: str,
    registry: ServiceRegistry = Depends(get_registry),
    engine: HealthProbeEngine = Depends(get_engine),
):
    """One service descriptor with its latest health record."""
    descriptor = registry.get(name)
    if descriptor is None:
        raise HTTPException(status_code=404, detail=f"Service '{name}' not found")

    record = engine.snapshot.get(name)
    data = descriptor.to_dict()
    data["health"] = record.to_dict() if record else None
    return data


@router.get("/{name}/dependencies", response_model=ServiceDependenciesResponse)
async def get_service_dependencies(
    name: str,
    registry: ServiceRegistry = Depends(get_registry),
    graph: DependencyGraph = Depends(get_graph),
):
    """Direct dependencies, direct dependents and the full startup chain of a service."""
    if name not in registry:
        raise HTTPException(status_code=404, detail=f"Service '{name}' not found")

    return ServiceDependenciesResponse(
        service=name,
        dependencies=sorted(graph.dependencies_of(name)),
        dependents=sorted(graph.dependents_of(name)),
        transitive=graph.transitive_dependencies(name),
    )
