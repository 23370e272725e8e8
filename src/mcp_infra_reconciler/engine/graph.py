"""Resource graph: declaration -> dependency DAG.

Edges come from explicit ``depends_on`` entries and from reference tokens in
attribute values. Attribute values are resolved in a second pass, once the
attributes of dependencies are known.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from .schema import UNKNOWN, Reference, ResourceSpec, Template, contains_unknown

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Declaration cannot form a valid dependency graph."""
    pass


class DuplicateAddressError(GraphError):
    """Two resources share an address."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Duplicate resource address: {address}")


class UnresolvedReferenceError(GraphError):
    """A reference or depends_on entry names an address not in the graph."""

    def __init__(self, source: str, target: str, reason: str = "is not declared"):
        self.source = source
        self.target = target
        super().__init__(f"{source} references {target}, which {reason}")


class DependencyCycleError(GraphError):
    """The declaration contains a dependency cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


class ReferenceEvaluationError(GraphError):
    """A reference could not be resolved against applied attributes."""
    pass


@dataclass
class ResourceNode:
    """Graph node for one enabled resource."""
    spec: ResourceSpec
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)

    @property
    def address(self) -> str:
        return self.spec.address


class ResourceGraph:
    """Dependency DAG of enabled resources, keyed by address."""

    def __init__(
        self,
        nodes: Optional[dict[str, ResourceNode]] = None,
        disabled: Optional[dict[str, ResourceSpec]] = None,
    ):
        self.nodes: dict[str, ResourceNode] = nodes or {}
        self.disabled: dict[str, ResourceSpec] = disabled or {}

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(self.nodes)

    def spec(self, address: str) -> ResourceSpec:
        return self.nodes[address].spec

    def dependencies_of(self, address: str) -> set[str]:
        return set(self.nodes[address].dependencies)

    def dependents_of(self, address: str) -> set[str]:
        return set(self.nodes[address].dependents)

    def transitive_dependents(self, address: str) -> set[str]:
        """Every node that depends on ``address`` directly or indirectly."""
        seen: set[str] = set()
        stack = list(self.nodes[address].dependents)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].dependents)
        return seen

    def topological_order(self) -> list[str]:
        """Addresses with every dependency before its dependents.

        Ties are broken lexicographically so the order is stable.
        """
        remaining = {addr: len(node.dependencies) for addr, node in self.nodes.items()}
        ready = sorted(addr for addr, count in remaining.items() if count == 0)
        order = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for dependent in self.nodes[current].dependents:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)
            ready.sort()
        return order

    def evaluate(
        self,
        address: str,
        known: dict[str, dict[str, Any]],
        strict: bool = False,
    ) -> dict[str, Any]:
        """
        Resolve the attribute values of one resource.

        Args:
            address: Resource to evaluate
            known: Address -> attributes already known for dependencies
            strict: Raise instead of returning UNKNOWN for unresolved values

        Returns:
            Resolved inputs: attributes, plus ``tags`` when any are declared.
            Values that depend on not-yet-known attributes are UNKNOWN.

        Raises:
            ReferenceEvaluationError: In strict mode, if a value is still unknown
        """
        spec = self.nodes[address].spec
        inputs = {k: self._resolve(v, known) for k, v in spec.attributes.items()}
        if spec.tags:
            inputs["tags"] = {k: self._resolve(v, known) for k, v in spec.tags.items()}

        if strict:
            for name, value in inputs.items():
                if contains_unknown(value):
                    raise ReferenceEvaluationError(
                        f"{address}.{name} depends on a value that is still unknown: "
                        f"{self._describe(spec, name)}"
                    )
        return inputs

    def _resolve(self, value: Any, known: dict[str, dict[str, Any]]) -> Any:
        if isinstance(value, Reference):
            return known.get(value.address, {}).get(value.attribute, UNKNOWN)
        if isinstance(value, Template):
            rendered = []
            for part in value.parts:
                if isinstance(part, Reference):
                    part = self._resolve(part, known)
                    if part is UNKNOWN:
                        return UNKNOWN
                rendered.append(str(part))
            return "".join(rendered)
        if isinstance(value, dict):
            return {k: self._resolve(v, known) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v, known) for v in value]
        return value

    @staticmethod
    def _describe(spec: ResourceSpec, name: str) -> str:
        value = spec.tags if name == "tags" else spec.attributes.get(name)
        if isinstance(value, (Reference, Template)):
            return str(value)
        return "nested reference"


class GraphBuilder:
    """Build a ResourceGraph from resource specs."""

    def build(self, specs: list[ResourceSpec]) -> ResourceGraph:
        """
        Build and check the dependency graph.

        Disabled specs are left out of the graph and returned in
        ``graph.disabled``.

        Raises:
            DuplicateAddressError: If two specs share an address
            UnresolvedReferenceError: If an edge names a missing or disabled address
            DependencyCycleError: If the edges form a cycle
        """
        nodes: dict[str, ResourceNode] = {}
        disabled: dict[str, ResourceSpec] = {}

        for spec in specs:
            if spec.address in nodes or spec.address in disabled:
                raise DuplicateAddressError(spec.address)
            if spec.enabled:
                nodes[spec.address] = ResourceNode(spec=spec)
            else:
                disabled[spec.address] = spec

        for address, node in nodes.items():
            for target in sorted(node.spec.references()):
                if target not in nodes:
                    reason = "is disabled" if target in disabled else "is not declared"
                    raise UnresolvedReferenceError(address, target, reason)
                node.dependencies.add(target)
                nodes[target].dependents.add(address)

        graph = ResourceGraph(nodes=nodes, disabled=disabled)
        self._check_cycles(graph)

        logger.debug(
            f"Built graph: {len(nodes)} resources, "
            f"{sum(len(n.dependencies) for n in nodes.values())} edges, "
            f"{len(disabled)} disabled"
        )
        return graph

    def _check_cycles(self, graph: ResourceGraph) -> None:
        """Depth-first search keeping the current path as a recursion stack."""
        visiting, done = 1, 2
        marks: dict[str, int] = {}

        for root in sorted(graph.nodes):
            if root in marks:
                continue
            path = [root]
            marks[root] = visiting
            stack = [iter(sorted(graph.nodes[root].dependencies))]

            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    marks[path.pop()] = done
                    stack.pop()
                    continue
                mark = marks.get(nxt)
                if mark == visiting:
                    raise DependencyCycleError(path[path.index(nxt):] + [nxt])
                if mark is None:
                    marks[nxt] = visiting
                    path.append(nxt)
                    stack.append(iter(sorted(graph.nodes[nxt].dependencies)))
