"""Profile grouping and legacy profile id migration."""
from dataclasses import dataclass
from typing import Dict, List, Tuple, Union

from nodeops.utils.registry import ServiceDescriptor, ServiceRegistry


@dataclass(frozen=True)
class Single:
    """Legacy id that maps to exactly one canonical profile."""
    profile_id: str

    @property
    def profile_ids(self) -> Tuple[str, ...]:
        return (self.profile_id,)


@dataclass(frozen=True)
class Multiple:
    """Legacy id that was split into several canonical profiles."""
    ids: Tuple[str, ...]

    @property
    def profile_ids(self) -> Tuple[str, ...]:
        return self.ids


ProfileMigration = Union[Single, Multiple]


# Legacy profile id -> canonical profile id(s)
PROFILE_MIGRATION: Dict[str, ProfileMigration] = {
    "core": Single("kaspa-node"),
    "kaspa-user-applications": Multiple(("kasia-app", "k-social-app", "kaspa-explorer-bundle")),
    "indexer-services": Multiple(("kasia-indexer", "k-indexer-bundle")),
    "archive-node": Single("kaspa-archive-node"),
    "mining": Single("kaspa-stratum"),
}


class ProfileResolver:
    """Resolves profile ids, legacy or canonical, to registered services."""

    def __init__(self, registry: ServiceRegistry, migration: Dict[str, ProfileMigration] = None):
        self.registry = registry
        self.migration = PROFILE_MIGRATION if migration is None else migration

    def canonical_ids(self, profile_id: str) -> Tuple[str, ...]:
        """Canonical profile ids for `profile_id` (itself if not a legacy alias)."""
        migration = self.migration.get(profile_id)
        if migration is None:
            return (profile_id,)
        return migration.profile_ids

    def resolve(self, profile_id: str) -> List[ServiceDescriptor]:
        """Services belonging to a profile, in registry order.

        Unknown ids resolve to an empty list.
        """
        profile_ids = set(self.canonical_ids(profile_id))
        return [s for s in self.registry if s.profile in profile_ids]

    def profiles(self) -> List[str]:
        """Canonical profile ids present in the registry, in first-seen order."""
        return list(dict.fromkeys(s.profile for s in self.registry))
