"""Domain errors for registry, ordering, probing and runtime commands."""
from typing import Optional


class NodeOpsError(Exception):
    """Base exception for orchestration errors."""

    def __init__(self, message: str, error_code: str = "NODEOPS_ERROR", details: Optional[dict] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(NodeOpsError):
    """Registry data is invalid (unknown dependency, duplicate name, bad file).

    Raised at startup; the registry and graph must not be used afterwards.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, error_code="CONFIGURATION_ERROR", details=details)


class CycleError(NodeOpsError):
    """A dependency cycle was found while ordering a subset of services."""

    def __init__(self, member: str):
        self.member = member
        super().__init__(
            f"Circular dependency detected involving {member}",
            error_code="DEPENDENCY_CYCLE",
            details={"member": member},
        )


class ProbeError(NodeOpsError):
    """A single probe attempt failed.

    `kind` is one of the FailureKind values from nodeops.utils.probes and is
    what failure classification matches on.
    """

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(message, error_code="PROBE_FAILED", details={"kind": kind})


class RuntimeCommandError(NodeOpsError):
    """A container runtime command (list, restart, exec) failed or timed out."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(
            f"Runtime command '{command}' failed: {reason}",
            error_code="RUNTIME_COMMAND_FAILED",
            details={"command": command, "reason": reason},
        )
