"""Container runtime status collection and commands."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
import asyncio
import logging
import re

from nodeops.errors import RuntimeCommandError
from nodeops.utils.cache import TtlCache

logger = logging.getLogger(__name__)

PS_FORMAT = "{{.Names}}\t{{.Status}}\t{{.State}}\t{{.Image}}"


@dataclass(frozen=True)
class ProcessInfo:
    """Live state of one container as reported by the runtime."""
    name: str
    state: str  # Lowercase lifecycle state, e.g. "running", "exited"
    status_text: str  # Raw runtime text, e.g. "Up 3 hours (healthy)"
    image: str

    @property
    def is_running(self) -> bool:
        return self.state == "running"


class RuntimeStatusCollector(ABC):
    """Interface to the container runtime.

    `list_live_processes` is called once per health cycle and shared by every
    probe in it. `uptime_of` and `version_of` are best-effort and return None
    instead of raising.
    """

    @abstractmethod
    async def list_live_processes(self) -> Dict[str, ProcessInfo]:
        """All managed containers keyed by service name."""

    @abstractmethod
    async def uptime_of(self, name: str) -> Optional[int]:
        """Seconds since the container started, or None."""

    @abstractmethod
    async def version_of(self, name: str) -> Optional[str]:
        """Image tag of the container, or None."""

    @abstractmethod
    async def restart(self, name: str) -> None:
        """Restart one container. Raises RuntimeCommandError on failure."""

    @abstractmethod
    async def exec(self, name: str, argv: List[str], timeout: Optional[float] = None) -> str:
        """Run a command inside the container and return its stdout.

        Raises RuntimeCommandError if the command exits non-zero.
        """


def image_tag(image: str) -> str:
    """Tag part of an image reference; 'latest' when none is given."""
    reference = image.split("@", 1)[0]
    name, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return "latest"
    return tag


_FRACTION = re.compile(r"\.(\d+)")


def parse_started_at(value: str) -> Optional[datetime]:
    """Parse a runtime start timestamp (RFC 3339, up to nanosecond precision)."""
    value = value.strip().strip("'\"")
    if not value or value.startswith("0001-01-01"):
        return None
    value = value.replace("Z", "+00:00")
    # datetime only keeps microseconds
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        started = datetime.fromisoformat(value)
    except ValueError:
        return None
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return started


def parse_ps_output(stdout: str) -> Dict[str, ProcessInfo]:
    """Parse `docker ps` output produced with PS_FORMAT."""
    services: Dict[str, ProcessInfo] = {}
    for line in stdout.strip().splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) < 4:
            logger.debug(f"Skipping malformed docker ps line: {line!r}")
            continue
        name, status, state, image = parts[:4]
        services[name] = ProcessInfo(
            name=name,
            state=state.strip().lower(),
            status_text=status,
            image=image,
        )
    return services


class DockerRuntime(RuntimeStatusCollector):
    """Runtime collector backed by the docker CLI."""

    def __init__(self, binary: str = "docker", command_timeout: float = 30.0, version_ttl: float = 60.0):
        self.binary = binary
        self.command_timeout = command_timeout
        self._versions = TtlCache(version_ttl)

    async def _run(self, *args: str, timeout: Optional[float] = None) -> str:
        command = " ".join([self.binary, *args])
        timeout = self.command_timeout if timeout is None else timeout

        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeCommandError(command, str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RuntimeCommandError(command, f"timed out after {timeout}s")
        except asyncio.CancelledError:
            proc.kill()
            await asyncio.shield(proc.wait())
            raise

        if proc.returncode != 0:
            reason = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            raise RuntimeCommandError(command, reason)

        return stdout.decode(errors="replace")

    async def list_live_processes(self) -> Dict[str, ProcessInfo]:
        try:
            stdout = await self._run("ps", "-a", "--format", PS_FORMAT)
        except RuntimeCommandError as e:
            logger.error(f"Failed to get Docker services: {e.reason}")
            return {}
        return parse_ps_output(stdout)

    async def uptime_of(self, name: str) -> Optional[int]:
        try:
            stdout = await self._run("inspect", name, "--format", "{{.State.StartedAt}}")
        except RuntimeCommandError as e:
            logger.debug(f"Uptime lookup failed for {name}: {e.reason}")
            return None

        started = parse_started_at(stdout)
        if started is None:
            return None
        return max(0, int((datetime.now(timezone.utc) - started).total_seconds()))

    async def version_of(self, name: str) -> Optional[str]:
        async def fetch() -> Optional[str]:
            try:
                stdout = await self._run("inspect", name, "--format", "{{.Config.Image}}")
            except RuntimeCommandError as e:
                logger.debug(f"Version lookup failed for {name}: {e.reason}")
                return None
            return image_tag(stdout.strip())

        return await self._versions.get(name, fetch)

    async def restart(self, name: str) -> None:
        await self._run("restart", name)
        self._versions.invalidate(name)

    async def exec(self, name: str, argv: List[str], timeout: Optional[float] = None) -> str:
        return await self._run("exec", name, *argv, timeout=timeout)
