"""Declarative resource graph with dependency edges."""

from collections.abc import Iterable, Iterator
from graphlib import CycleError, TopologicalSorter

from kubestrap.core.models import ResourceSpec


class ResourceGraph:
    """Set of ResourceSpecs keyed by logical name.

    Specs are immutable once added. Edges point from a spec to the specs
    it depends on; the graph must stay acyclic and closed (every
    dependency names a spec in the graph).
    """

    def __init__(self, specs: Iterable[ResourceSpec] = ()):
        self._specs: dict[str, ResourceSpec] = {}
        for spec in specs:
            self.add(spec)

    def add(self, spec: ResourceSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Resource {spec.name} already submitted")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ResourceSpec:
        return self._specs[name]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def validate(self) -> None:
        """Check the graph is closed and acyclic.

        Raises:
            ValueError: On a dangling dependency or a cycle
        """
        for spec in self._specs.values():
            missing = sorted(d for d in spec.dependencies if d not in self._specs)
            if missing:
                raise ValueError(f"Resource {spec.name} depends on unknown {', '.join(missing)}")
        try:
            self._sorter().prepare()
        except CycleError as e:
            raise ValueError(f"Dependency cycle: {' -> '.join(e.args[1])}") from e

    def sorter(self) -> TopologicalSorter[str]:
        """A prepared sorter for walking independent branches concurrently."""
        self.validate()
        sorter = self._sorter()
        sorter.prepare()
        return sorter

    def topological_order(self) -> list[str]:
        """Logical names with every dependency before its dependents."""
        self.validate()
        return list(self._sorter().static_order())

    def dependents(self, name: str) -> set[str]:
        """Every spec that transitively depends on ``name``."""
        found: set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for spec in self._specs.values():
                if current in spec.dependencies and spec.name not in found:
                    found.add(spec.name)
                    frontier.append(spec.name)
        return found

    def _sorter(self) -> TopologicalSorter[str]:
        return TopologicalSorter({name: set(spec.dependencies) for name, spec in self._specs.items()})
