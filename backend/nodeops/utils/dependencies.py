"""Service dependency graph and ordering."""
from typing import List, Dict, Set, Optional, Iterable, FrozenSet
import logging

from nodeops.errors import ConfigurationError, CycleError
from nodeops.utils.registry import ServiceRegistry

logger = logging.getLogger(__name__)

# Visit states for depth-first ordering
_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class DependencyGraph:
    """Forward and reverse dependency edges between registered services.

    Built once from the registry and never mutated afterwards, so it can be
    shared between the health engine and the restart orchestrator without
    locking. Orderings are computed per call over an explicit subset.
    """

    def __init__(self, dependencies: Dict[str, List[str]]):
        """Initialize from a name -> dependency names mapping.

        Use `build()` to construct from a registry; this constructor does not
        validate edge targets.
        """
        self._order: List[str] = list(dependencies)
        self._dependencies: Dict[str, FrozenSet[str]] = {
            name: frozenset(deps) for name, deps in dependencies.items()
        }
        # Declaration order of edges, used to keep orderings deterministic
        self._declared: Dict[str, List[str]] = {
            name: list(deps) for name, deps in dependencies.items()
        }

        dependents: Dict[str, Set[str]] = {name: set() for name in dependencies}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents.setdefault(dep, set()).add(name)
        self._dependents: Dict[str, FrozenSet[str]] = {
            name: frozenset(names) for name, names in dependents.items()
        }

    @classmethod
    def build(cls, registry: ServiceRegistry) -> "DependencyGraph":
        """Build the graph, failing fast on references to unregistered services.

        Raises:
            ConfigurationError: If any declared dependency is not in the registry.
        """
        for descriptor in registry:
            for dep in descriptor.dependencies:
                if dep not in registry:
                    raise ConfigurationError(
                        f"Service '{descriptor.name}' depends on '{dep}' "
                        f"which is not registered. Available: {sorted(registry.names())}",
                        details={"service": descriptor.name, "dependency": dep},
                    )

        graph = cls({d.name: list(d.dependencies) for d in registry})
        logger.info(f"Dependency graph built for {len(registry)} services")
        return graph

    def dependencies_of(self, name: str) -> Set[str]:
        """Direct dependencies of a service; empty for unknown names."""
        return set(self._dependencies.get(name, ()))

    def dependents_of(self, name: str) -> Set[str]:
        """Services that directly depend on `name`; empty for unknown names."""
        return set(self._dependents.get(name, ()))

    def topological_order(self, subset: Iterable[str]) -> List[str]:
        """Order `subset` so that every dependency precedes its dependents.

        Only edges with both ends inside the subset are considered. Names are
        visited in registry order (unknown names last, in input order) so the
        result is stable for a given subset.

        Raises:
            CycleError: If the subset contains a dependency cycle.
        """
        names = list(dict.fromkeys(subset))
        members = set(names)
        roots = [n for n in self._order if n in members]
        roots += [n for n in names if n not in self._dependencies]

        state: Dict[str, int] = {}
        result: List[str] = []

        def visit(name: str):
            current = state.get(name, _UNVISITED)
            if current == _IN_PROGRESS:
                raise CycleError(name)
            if current == _DONE:
                return

            state[name] = _IN_PROGRESS
            for dep in self._declared.get(name, []):
                if dep in members:
                    visit(dep)
            state[name] = _DONE
            result.append(name)

        for name in roots:
            if state.get(name, _UNVISITED) == _UNVISITED:
                visit(name)

        return result

    def transitive_dependencies(self, name: str) -> List[str]:
        """All dependencies (transitive) of a service in startup order.

        The service itself is not included. Cycles are ignored here; use
        `find_cycle()` to report them.
        """
        if name not in self._dependencies:
            return []

        visited = set()
        order = []

        def visit(svc: str):
            if svc in visited:
                return
            visited.add(svc)

            # Visit dependencies first
            for dep in self._declared.get(svc, []):
                visit(dep)

            order.append(svc)

        visit(name)

        if name in order:
            order.remove(name)

        return order

    def find_cycle(self) -> Optional[List[str]]:
        """
        Check the whole graph for circular dependencies.
        Returns the cycle path (first node repeated at the end) if found, None otherwise.
        """
        visited = set()
        rec_stack = set()

        def has_cycle(service: str, path: List[str]) -> Optional[List[str]]:
            visited.add(service)
            rec_stack.add(service)
            path.append(service)

            for dep in self._declared.get(service, []):
                if dep not in visited:
                    cycle = has_cycle(dep, path[:])
                    if cycle:
                        return cycle
                elif dep in rec_stack:
                    cycle_start = path.index(dep)
                    return path[cycle_start:] + [dep]

            rec_stack.remove(service)
            return None

        for service in self._order:
            if service not in visited:
                cycle = has_cycle(service, [])
                if cycle:
                    return cycle

        return None
