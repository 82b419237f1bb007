"""Static service registry loaded from a YAML descriptor file."""
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlparse
import logging

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from nodeops.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Protocol(str, Enum):
    """Protocol a service is probed with."""
    STREAM_RPC = "stream-rpc"
    HTTP = "http"
    TCP = "tcp"
    RELATIONAL_STORE = "relational-store"


class Endpoint(BaseModel):
    """Network address of a service plus the protocol it speaks."""
    model_config = ConfigDict(frozen=True)

    url: str
    protocol: Protocol

    @property
    def host(self) -> Optional[str]:
        return urlparse(self.url).hostname

    @property
    def port(self) -> Optional[int]:
        return urlparse(self.url).port


class ServiceDescriptor(BaseModel):
    """Identity and static facts about one manageable service."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Required
    name: str = Field(min_length=1)
    display_name: str
    endpoint: Endpoint
    profile: str = Field(min_length=1)

    # Optional
    dependencies: Tuple[str, ...] = ()
    critical: bool = False
    long_sync: bool = False  # Blockchain nodes that stay unresponsive while syncing
    health_check_path: Optional[str] = None

    @field_validator("dependencies")
    @classmethod
    def unique_dependencies(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Drop repeated dependency names, keeping declaration order."""
        return tuple(dict.fromkeys(v))

    @property
    def protocol(self) -> Protocol:
        return self.endpoint.protocol

    def to_dict(self) -> dict:
        """Serialize to a plain dictionary for API responses."""
        return {
            "name": self.name,
            "display_name": self.display_name,
            "url": self.endpoint.url,
            "type": self.endpoint.protocol.value,
            "profile": self.profile,
            "dependencies": list(self.dependencies),
            "critical": self.critical,
            "health_check_path": self.health_check_path,
        }


class ServiceRegistry:
    """Immutable, ordered catalog of service descriptors keyed by name."""

    def __init__(self, descriptors: List[ServiceDescriptor]):
        by_name: Dict[str, ServiceDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in by_name:
                raise ConfigurationError(
                    f"Service '{descriptor.name}' is declared more than once",
                    details={"service": descriptor.name},
                )
            by_name[descriptor.name] = descriptor
        self._descriptors: Tuple[ServiceDescriptor, ...] = tuple(descriptors)
        self._by_name = by_name

    def get(self, name: str) -> Optional[ServiceDescriptor]:
        """Get a descriptor by service name, or None if not registered."""
        return self._by_name.get(name)

    def names(self) -> List[str]:
        """Service names in declaration order."""
        return [d.name for d in self._descriptors]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)


def load_registry(path: str) -> ServiceRegistry:
    """Load and validate the registry file.

    Raises:
        ConfigurationError: If the file is missing, is not a YAML list, or any
            entry fails validation.
    """
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read service registry {path}: {e}", details={"path": path})
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in service registry {path}: {e}", details={"path": path})

    if not isinstance(raw, list):
        raise ConfigurationError(
            f"Service registry {path} must contain a list of services",
            details={"path": path},
        )

    descriptors = []
    for index, entry in enumerate(raw):
        try:
            descriptors.append(ServiceDescriptor.model_validate(entry))
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid service entry #{index} in {path}: {e.error_count()} validation error(s)",
                details={"path": path, "index": index, "errors": e.errors(include_url=False, include_context=False)},
            )

    registry = ServiceRegistry(descriptors)
    logger.info(f"Loaded {len(registry)} service descriptors from {path}")
    return registry
