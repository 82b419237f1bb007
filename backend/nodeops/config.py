"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Literal
import os


DEFAULT_REGISTRY_PATH = os.path.join(os.path.dirname(__file__), "services.yaml")


class Settings(BaseSettings):
    """Application settings.

    Every value has a default suitable for a single-host Docker install.
    Priority: Environment variables > .env file > defaults defined here
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # App Configuration
    APP_NAME: str = "nodeops"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    # Service registry (YAML list of service descriptors)
    REGISTRY_PATH: str = DEFAULT_REGISTRY_PATH

    # Container runtime
    RUNTIME_BACKEND: Literal["docker", "kubernetes"] = "docker"
    DOCKER_BINARY: str = "docker"
    RUNTIME_COMMAND_TIMEOUT: float = 30.0
    KUBECONFIG_PATH: str = "~/.kube/config"
    KUBERNETES_NAMESPACE: str = "kaspa"

    # Health checks
    HEALTH_CHECK_INTERVAL: float = Field(default=5.0, gt=0)
    HEALTH_CYCLE_DEADLINE: float = Field(default=60.0, gt=0)
    HEALTH_MAX_CONCURRENCY: int = Field(default=8, ge=1)
    PROBE_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    PROBE_TIMEOUT: float = Field(default=5.0, gt=0)
    PROBE_BASE_RETRY_DELAY: float = Field(default=1.0, ge=0)
    PROBE_MAX_RETRY_DELAY: float = Field(default=30.0, ge=0)
    VERSION_CACHE_TTL: float = Field(default=60.0, ge=0)

    # Restarts
    RESTART_DELAY: float = Field(default=2.0, ge=0)

    # Restart history database
    DATABASE_URL: str = "sqlite+aiosqlite:///./nodeops.db"

    # CORS Configuration
    CORS_ORIGINS: List[str] = [
        "http://localhost:8080",
        "http://localhost:3000",
    ]


settings = Settings()
