"""Dependency graph construction.

Builds a graph with one node per object address (desired objects and
objects that exist only in state) plus one node per provider
configuration. Node B depends on node A when B's attributes reference A,
when B lists A in depends_on, or when A is B's provider configuration.

Moved renames are applied to the state snapshot before lookup, so an
object at its new address inherits the old record and serial.
"""

import dataclasses
import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from common import base_address, instance_key, provider_address, provider_name
from configuration import Configuration, DeclaredObject, Lifecycle, ProviderConfig
from engine.state import StateRecord
from errors import AddressConflict, CycleDetected, UnresolvedReference

logger = logging.getLogger(__name__)

RESOURCE = 'resource'
PROVIDER = 'provider'


@dataclass
class GraphNode:
    """A node in the dependency graph.

    Attributes:
        address: Object or provider configuration address
        kind: 'resource' or 'provider'
        desired: Declared object (None for objects only in state)
        provider_config: Provider configuration (provider nodes)
        prior: State record (after moved renames)
        moved_from: Previous address when the record was renamed
        dependencies: Addresses this node depends on
    """
    address: str
    kind: str = RESOURCE
    desired: Optional[DeclaredObject] = None
    provider_config: Optional[ProviderConfig] = None
    prior: Optional[StateRecord] = None
    moved_from: Optional[str] = None
    dependencies: set[str] = field(default_factory=set)

    @property
    def is_orphan(self) -> bool:
        return self.kind == RESOURCE and self.desired is None

    @property
    def type(self) -> str:
        if self.desired is not None:
            return self.desired.type
        return self.prior.type if self.prior else ''

    @property
    def provider(self) -> str:
        if self.kind == PROVIDER:
            return self.address
        if self.desired is not None:
            return self.desired.provider
        return self.prior.provider if self.prior else ''

    @property
    def lifecycle(self) -> Lifecycle:
        return self.desired.lifecycle if self.desired is not None else Lifecycle()

    @property
    def base_address(self) -> str:
        if self.desired is not None:
            return self.desired.base_address
        return base_address(self.address)

    def __repr__(self) -> str:
        return f"GraphNode({self.address}, kind={self.kind}, deps={sorted(self.dependencies)})"


def topological_sort(deps: Mapping[str, Iterable[str]]) -> list[str]:
    """Order keys so every key follows its dependencies.

    Ties are broken by address, so the order is deterministic. Dependencies
    on keys not in deps are ignored.

    Raises:
        CycleDetected: If the dependencies contain a cycle
    """
    remaining = {k: {d for d in v if d in deps and d != k} for k, v in deps.items()}
    dependents: dict[str, set[str]] = {k: set() for k in deps}
    for key, ds in remaining.items():
        for d in ds:
            dependents[d].add(key)

    ready = [k for k, ds in remaining.items() if not ds]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        key = heapq.heappop(ready)
        ordered.append(key)
        for dependent in dependents[key]:
            remaining[dependent].discard(key)
            if not remaining[dependent]:
                heapq.heappush(ready, dependent)

    if len(ordered) != len(deps):
        raise CycleDetected(find_cycle(deps) or sorted(set(deps) - set(ordered)))
    return ordered


def find_cycle(deps: Mapping[str, Iterable[str]]) -> Optional[list[str]]:
    """Return one cycle as [a, b, ..., a], or None."""
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def _visit(key: str) -> Optional[list[str]]:
        visited.add(key)
        stack.append(key)
        on_stack.add(key)
        for dep in sorted(deps.get(key, ())):
            if dep not in deps:
                continue
            if dep in on_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                cycle = _visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(key)
        return None

    for key in sorted(deps):
        if key not in visited:
            cycle = _visit(key)
            if cycle:
                return cycle
    return None


class DependencyGraph:
    """Nodes plus directed dependency edges."""

    def __init__(self):
        self.nodes: dict[str, GraphNode] = {}
        self.moved: dict[str, str] = {}

    def add_node(self, node: GraphNode) -> GraphNode:
        self.nodes[node.address] = node
        return node

    def add_edge(self, source: str, target: str) -> None:
        """Record that source depends on target."""
        self.nodes[source].dependencies.add(target)

    def get(self, address: str) -> Optional[GraphNode]:
        return self.nodes.get(address)

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def resources(self) -> list[GraphNode]:
        return [n for n in self.nodes.values() if n.kind == RESOURCE]

    def instances_of(self, address: str) -> list[GraphNode]:
        """Expansion instances whose base address is address."""
        found = [
            n for n in self.nodes.values()
            if n.kind == RESOURCE and n.address != address and n.base_address == address
        ]
        return sorted(found, key=lambda n: _instance_sort_key(n.address))

    def dependents(self, address: str) -> set[str]:
        return {a for a, n in self.nodes.items() if address in n.dependencies}

    def edges(self) -> dict[str, set[str]]:
        return {a: set(n.dependencies) for a, n in self.nodes.items()}

    def topological_order(self) -> list[str]:
        return topological_sort(self.edges())

    def find_cycle(self) -> Optional[list[str]]:
        return find_cycle(self.edges())


def _instance_sort_key(address: str) -> tuple:
    key = instance_key(address)
    if isinstance(key, int):
        return (0, key, '')
    return (1, 0, str(key))


class GraphBuilder:
    """Builds the dependency graph for one planning cycle."""

    def build(
        self,
        configuration: Configuration,
        snapshot: Mapping[str, StateRecord],
        moved: Optional[Mapping[str, str]] = None,
    ) -> DependencyGraph:
        """Build the graph.

        Args:
            configuration: Desired configuration
            snapshot: State records by address
            moved: Old address -> new address (defaults to configuration.moved)

        Raises:
            CycleDetected: If references form a cycle
            UnresolvedReference: If a referenced address has neither a
                desired object nor a state record
            AddressConflict: If a rename targets an occupied address
        """
        moved = configuration.moved if moved is None else moved
        state, renamed = self._apply_moves(dict(snapshot), moved)

        graph = DependencyGraph()
        graph.moved = {src: dst for dst, src in renamed.items()}

        for address, obj in configuration.objects.items():
            graph.add_node(GraphNode(
                address=address,
                desired=obj,
                prior=state.get(address),
                moved_from=renamed.get(address),
            ))

        for address in sorted(state):
            if address not in graph:
                graph.add_node(GraphNode(
                    address=address,
                    prior=state[address],
                    moved_from=renamed.get(address),
                ))

        for node in list(graph.nodes.values()):
            self._add_provider_node(graph, configuration, node.provider)
            if node.prior is not None:
                self._add_provider_node(graph, configuration, node.prior.provider)

        for node in list(graph.nodes.values()):
            self._add_edges(graph, node)

        cycle = graph.find_cycle()
        if cycle:
            raise CycleDetected(cycle)

        logger.debug(f"Built graph: {len(graph)} nodes, {len(graph.moved)} moved")
        return graph

    def _apply_moves(
        self, state: dict[str, StateRecord], moved: Mapping[str, str]
    ) -> tuple[dict[str, StateRecord], dict[str, str]]:
        """Rename records. Returns (state, new address -> old address)."""
        pairs: list[tuple[str, str]] = []
        scheduled: set[str] = set()
        for source in sorted(moved):
            target = moved[source]
            if source in state and source not in scheduled:
                pairs.append((source, target))
                scheduled.add(source)
            # Moving a whole resource moves every expansion instance
            for address in sorted(state):
                if address != source and address not in scheduled and base_address(address) == source:
                    pairs.append((address, target + address[len(source):]))
                    scheduled.add(address)

        if not pairs:
            return state, {}

        records = {src: state.pop(src) for src, _ in pairs}
        renamed: dict[str, str] = {}
        for source, target in pairs:
            if target in state or target in renamed:
                raise AddressConflict(source, target)
            state[target] = dataclasses.replace(records[source], address=target)
            renamed[target] = source
            logger.info(f"Moved {source} -> {target}")

        sources = {src: dst for dst, src in renamed.items()}
        for address, record in state.items():
            if any(d in sources for d in record.dependencies):
                state[address] = dataclasses.replace(
                    record, dependencies=[sources.get(d, d) for d in record.dependencies])
        return state, renamed

    @staticmethod
    def _add_provider_node(graph: DependencyGraph, configuration: Configuration, address: str) -> None:
        if not address or address in graph:
            return
        config = configuration.providers.get(address)
        if config is None:
            name = provider_name(address)
            alias = address[len(provider_address(name)) + 1:] or None
            config = ProviderConfig(name=name, alias=alias)
        graph.add_node(GraphNode(address=address, kind=PROVIDER, provider_config=config))

    def _resolve_targets(self, graph: DependencyGraph, source: str, target: str) -> list[str]:
        node = graph.get(target)
        if node is not None and node.kind == RESOURCE:
            return [target]
        instances = graph.instances_of(target)
        if not instances:
            raise UnresolvedReference(source, target)
        return [n.address for n in instances]

    def _add_edges(self, graph: DependencyGraph, node: GraphNode) -> None:
        if node.kind == PROVIDER:
            for ref in node.provider_config.references:
                for target in self._resolve_targets(graph, node.address, ref.address):
                    graph.add_edge(node.address, target)
            return

        graph.add_edge(node.address, node.provider)

        if node.desired is None:
            # Recorded dependencies order the destruction of orphans
            for dep in node.prior.dependencies:
                if dep in graph and dep != node.address:
                    graph.add_edge(node.address, dep)
            return

        for ref in node.desired.references:
            for target in self._resolve_targets(graph, node.address, ref.address):
                graph.add_edge(node.address, target)
        for dep in node.desired.depends_on:
            for target in self._resolve_targets(graph, node.address, dep):
                graph.add_edge(node.address, target)
