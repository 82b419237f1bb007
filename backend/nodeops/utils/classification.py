"""Heuristic table for telling a syncing node apart from a failed one.

A blockchain node keeps its container running for a long time before its RPC
port serves requests. Probe failures that look like "not bound yet" on such a
service are reported as syncing instead of unhealthy.

The table is approximate and intentionally narrow. Other transient network
errors on these services may still be reported as syncing; entries are only
added together with a version bump.
"""
from dataclasses import dataclass
from typing import Optional, Tuple

from nodeops.errors import ProbeError
from nodeops.utils.probes import FailureKind
from nodeops.utils.registry import Protocol, ServiceDescriptor

SIGNATURE_TABLE_VERSION = 1

SYNCING_MESSAGE = "Node is syncing with network"


@dataclass(frozen=True)
class SyncingSignature:
    """A (protocol, failure kind) pair that indicates startup lag."""
    name: str
    protocol: Protocol
    kind: FailureKind


SYNCING_SIGNATURES: Tuple[SyncingSignature, ...] = (
    SyncingSignature("rpc-port-not-bound", Protocol.STREAM_RPC, FailureKind.CONNECTION_REFUSED),
    SyncingSignature("rpc-parse-error", Protocol.STREAM_RPC, FailureKind.PROTOCOL_ERROR),
    SyncingSignature("rpc-timeout", Protocol.STREAM_RPC, FailureKind.TIMEOUT),
)


def is_sync_prone(service: ServiceDescriptor) -> bool:
    return service.critical and service.long_sync


def match_syncing_signature(service: ServiceDescriptor, error: ProbeError) -> Optional[SyncingSignature]:
    """The signature `error` matches for `service`, or None."""
    if not is_sync_prone(service):
        return None
    for signature in SYNCING_SIGNATURES:
        if signature.protocol == service.protocol and signature.kind.value == error.kind:
            return signature
    return None
