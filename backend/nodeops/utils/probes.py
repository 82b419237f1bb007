"""Protocol-specific probe attempts.

Each probe performs exactly one attempt and reports failure as a ProbeError
with a normalized FailureKind. Retries, timeouts and classification live in
nodeops.utils.health and are the same for every protocol.
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict
import asyncio

import httpx

from nodeops.errors import ProbeError, RuntimeCommandError
from nodeops.utils.registry import Protocol, ServiceDescriptor
from nodeops.utils.runtime import RuntimeStatusCollector

DEFAULT_HEALTH_PATH = "/health"


class FailureKind(str, Enum):
    """Normalized reason a probe attempt failed."""
    CONNECTION_REFUSED = "connection-refused"
    PROTOCOL_ERROR = "protocol-error"  # Peer answered with something unparseable
    TIMEOUT = "timeout"
    BAD_STATUS = "bad-status"
    COMMAND_FAILED = "command-failed"
    OTHER = "other"


def to_probe_error(exc: Exception) -> ProbeError:
    """Translate a transport exception into a ProbeError."""
    if isinstance(exc, ProbeError):
        return exc
    if isinstance(exc, httpx.TimeoutException) or isinstance(exc, asyncio.TimeoutError):
        return ProbeError(FailureKind.TIMEOUT.value, f"timeout: {exc}" if str(exc) else "timeout")
    if isinstance(exc, ConnectionRefusedError):
        return ProbeError(FailureKind.CONNECTION_REFUSED.value, f"Connection refused: {exc}")
    if isinstance(exc, httpx.ConnectError):
        if "refused" in str(exc).lower() or isinstance(exc.__cause__, ConnectionRefusedError):
            return ProbeError(FailureKind.CONNECTION_REFUSED.value, f"Connection refused: {exc}")
        return ProbeError(FailureKind.OTHER.value, f"Connection failed: {exc}")
    if isinstance(exc, (httpx.ProtocolError, httpx.DecodingError)):
        return ProbeError(FailureKind.PROTOCOL_ERROR.value, f"Parse Error: {exc}")
    if isinstance(exc, RuntimeCommandError):
        return ProbeError(FailureKind.COMMAND_FAILED.value, exc.message)
    return ProbeError(FailureKind.OTHER.value, str(exc) or type(exc).__name__)


class Probe(ABC):
    """One liveness check attempt for a protocol."""

    protocol: Protocol

    @abstractmethod
    async def attempt(self, service: ServiceDescriptor) -> None:
        """Probe once. Returns on success, raises ProbeError on failure."""


class StreamRpcProbe(Probe):
    """Sends a `ping` RPC call to the node's RPC endpoint."""

    protocol = Protocol.STREAM_RPC

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def attempt(self, service: ServiceDescriptor) -> None:
        try:
            response = await self.client.post(service.endpoint.url, json={"method": "ping", "params": {}})
        except (httpx.HTTPError, OSError) as e:
            raise to_probe_error(e)

        if response.status_code != 200:
            raise ProbeError(
                FailureKind.BAD_STATUS.value,
                f"RPC health check failed with status {response.status_code}",
            )


class HttpProbe(Probe):
    """GET against the service's health path."""

    protocol = Protocol.HTTP

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def attempt(self, service: ServiceDescriptor) -> None:
        path = service.health_check_path or DEFAULT_HEALTH_PATH
        url = service.endpoint.url.rstrip("/") + path
        try:
            response = await self.client.get(url)
        except (httpx.HTTPError, OSError) as e:
            raise to_probe_error(e)

        if response.status_code != 200:
            raise ProbeError(
                FailureKind.BAD_STATUS.value,
                f"HTTP health check failed with status {response.status_code}",
            )


class TcpProbe(Probe):
    """Opens and immediately closes a TCP connection."""

    protocol = Protocol.TCP

    async def attempt(self, service: ServiceDescriptor) -> None:
        host, port = service.endpoint.host, service.endpoint.port
        if not host or not port:
            raise ProbeError(FailureKind.OTHER.value, f"No host/port in endpoint {service.endpoint.url}")

        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError as e:
            raise to_probe_error(e)

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


class RelationalStoreProbe(Probe):
    """Runs `pg_isready` inside the database container."""

    protocol = Protocol.RELATIONAL_STORE

    def __init__(self, runtime: RuntimeStatusCollector):
        self.runtime = runtime

    async def attempt(self, service: ServiceDescriptor) -> None:
        try:
            await self.runtime.exec(service.name, ["pg_isready", "-h", "localhost"])
        except RuntimeCommandError as e:
            raise ProbeError(
                FailureKind.COMMAND_FAILED.value,
                f"PostgreSQL health check failed: {e.reason}",
            )


def build_probes(client: httpx.AsyncClient, runtime: RuntimeStatusCollector) -> Dict[Protocol, Probe]:
    """One probe per supported protocol."""
    probes = [
        StreamRpcProbe(client),
        HttpProbe(client),
        TcpProbe(),
        RelationalStoreProbe(runtime),
    ]
    return {probe.protocol: probe for probe in probes}
