"""FastAPI application factory and configuration."""
from contextlib import asynccontextmanager
from typing import Dict, Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import httpx
import logging

from nodeops.api import health, services, profiles, restarts
from nodeops import database
from nodeops.config import settings, Settings
from nodeops.utils.dependencies import DependencyGraph
from nodeops.utils.health import HealthProbeEngine, RetryPolicy
from nodeops.utils.monitor import HealthMonitor
from nodeops.utils.probes import Probe, build_probes
from nodeops.utils.profiles import ProfileResolver
from nodeops.utils.registry import Protocol, ServiceRegistry, load_registry
from nodeops.utils.restart import RestartOrchestrator
from nodeops.utils.runtime import DockerRuntime, RuntimeStatusCollector

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logging.getLogger("sqlalchemy").setLevel(logging.ERROR)
logging.getLogger("uvicorn.access").setLevel(logging.ERROR)  # Suppress HTTP access logs
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("kubernetes").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_runtime(cfg: Settings) -> RuntimeStatusCollector:
    """Create the runtime collector selected by RUNTIME_BACKEND."""
    if cfg.RUNTIME_BACKEND == "kubernetes":
        from nodeops.utils.kubernetes import KubernetesRuntime

        return KubernetesRuntime(
            namespace=cfg.KUBERNETES_NAMESPACE,
            kubeconfig_path=cfg.KUBECONFIG_PATH,
            command_timeout=cfg.RUNTIME_COMMAND_TIMEOUT,
            version_ttl=cfg.VERSION_CACHE_TTL,
        )

    return DockerRuntime(
        binary=cfg.DOCKER_BINARY,
        command_timeout=cfg.RUNTIME_COMMAND_TIMEOUT,
        version_ttl=cfg.VERSION_CACHE_TTL,
    )


def create_app(
    registry: Optional[ServiceRegistry] = None,
    runtime: Optional[RuntimeStatusCollector] = None,
    probes: Optional[Dict[Protocol, Probe]] = None,
    start_monitor: bool = True,
    cfg: Settings = settings,
) -> FastAPI:
    """Create and configure FastAPI application.

    Components not passed in are built from settings at startup. Startup
    aborts with ConfigurationError if the registry or its dependency edges
    are invalid.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service_registry = registry if registry is not None else load_registry(cfg.REGISTRY_PATH)
        graph = DependencyGraph.build(service_registry)
        cycle = graph.find_cycle()
        if cycle:
            logger.warning(f"Registry contains a dependency cycle: {' -> '.join(cycle)}")

        service_runtime = runtime if runtime is not None else build_runtime(cfg)
        http_client = httpx.AsyncClient(timeout=cfg.PROBE_TIMEOUT)

        engine = HealthProbeEngine(
            registry=service_registry,
            graph=graph,
            runtime=service_runtime,
            probes=probes if probes is not None else build_probes(http_client, service_runtime),
            retry=RetryPolicy(
                attempts=cfg.PROBE_RETRY_ATTEMPTS,
                timeout=cfg.PROBE_TIMEOUT,
                base_delay=cfg.PROBE_BASE_RETRY_DELAY,
                max_delay=cfg.PROBE_MAX_RETRY_DELAY,
            ),
            max_concurrency=cfg.HEALTH_MAX_CONCURRENCY,
            cycle_deadline=cfg.HEALTH_CYCLE_DEADLINE,
        )
        resolver = ProfileResolver(service_registry)
        orchestrator = RestartOrchestrator(
            service_registry, graph, resolver, service_runtime, restart_delay=cfg.RESTART_DELAY
        )
        monitor = HealthMonitor(engine, interval=cfg.HEALTH_CHECK_INTERVAL)

        app.state.registry = service_registry
        app.state.graph = graph
        app.state.resolver = resolver
        app.state.engine = engine
        app.state.orchestrator = orchestrator
        app.state.monitor = monitor

        if cfg is not settings:
            database.configure_engine(cfg.DATABASE_URL)
        await database.init_db()
        if start_monitor:
            await monitor.start()

        logger.info(f"{cfg.APP_NAME} started with {len(service_registry)} services ({cfg.RUNTIME_BACKEND} runtime)")
        try:
            yield
        finally:
            await monitor.stop()
            await http_client.aclose()
            logger.info(f"{cfg.APP_NAME} stopped")

    app = FastAPI(
        title="nodeops API",
        description="Service dependency and health orchestration for a Kaspa node stack",
        version=cfg.APP_VERSION,
        lifespan=lifespan,
    )

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(health.router)
    app.include_router(services.router)
    app.include_router(profiles.router)
    app.include_router(restarts.router)

    return app


if __name__ == "__main__":
    import uvicorn
    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=3000)
