"""Plan engine: classify each graph node's action and compute its diff.

Planning never mutates state or calls provider operations; it only asks
providers for resource schemas.

Actions:
- create: no state record
- destroy: no desired object (or a destroy plan)
- update: changed attributes are all mutable in place
- replace: a changed attribute forces a new object, ordered
  create-then-destroy when create_before_destroy is set, else
  destroy-then-create
- no-op: nothing to change

Values that depend on an object being created or replaced are unknown until
apply; they propagate to dependents and are shown as "(known after apply)".
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from common import (
    UNKNOWN,
    Reference,
    contains_unknown,
    instance_key,
    lookup_path,
    substitute,
)
from configuration import Lifecycle
from engine.graph import PROVIDER, RESOURCE, DependencyGraph, GraphNode, find_cycle, topological_sort
from engine.state import StateRecord
from errors import CycleDetected, DestroyForbidden
from providers.base import ProviderInstances, ResourceSchema

logger = logging.getLogger(__name__)

DEPOSED = 'deposed'
DEPOSED_SUFFIX = ' (deposed)'
STALE_SUFFIX = ' (stale deposed)'


class Action(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DESTROY = 'destroy'
    REPLACE = 'replace'
    NOOP = 'no-op'


class ReplaceOrder(str, Enum):
    DESTROY_THEN_CREATE = 'destroy-then-create'
    CREATE_THEN_DESTROY = 'create-then-destroy'


def render_value(value: Any) -> Any:
    """JSON-safe copy of value with UNKNOWN shown as (known after apply)."""
    if value is UNKNOWN:
        return '(known after apply)'
    if isinstance(value, Reference):
        return f'${{{value}}}'
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v) for v in value]
    return value


@dataclass
class AttributeChange:
    """Attribute-level difference.

    Attributes:
        name: Attribute name
        kind: added, changed, removed or unknown (known after apply)
        before: Prior value
        after: Planned value (may contain UNKNOWN)
        forces_replacement: The change alone forces a new object
    """
    name: str
    kind: str
    before: Any = None
    after: Any = None
    forces_replacement: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'kind': self.kind}
        if self.kind != 'added':
            d['before'] = render_value(self.before)
        if self.kind != 'removed':
            d['after'] = render_value(self.after)
        if self.forces_replacement:
            d['forces_replacement'] = True
        return d


@dataclass
class PlanNode:
    """One planned step.

    Attributes:
        key: Unique key within the plan (address, or address with a deposed suffix)
        address: Object or provider configuration address
        action: Planned action
        kind: resource, provider or deposed
        type: Resource type
        provider: Provider configuration address
        replace_order: Ordering of a replace
        changes: Attribute-level diff
        dependencies: Keys of plan nodes that must complete first
        config_attributes: Desired attributes with references, resolved at apply
        prior: State record the plan was computed against
        planned: Planned attribute map (may contain UNKNOWN)
        moved_from: Previous address of a renamed record
        state_dependencies: Object addresses recorded as dependencies on write
        lifecycle: Lifecycle policy of the desired object
        deposed: Old object attributes destroyed by a deposed node
    """
    key: str
    address: str
    action: Action
    kind: str = RESOURCE
    type: str = ''
    provider: str = ''
    replace_order: Optional[ReplaceOrder] = None
    changes: list[AttributeChange] = field(default_factory=list)
    dependencies: set[str] = field(default_factory=set)
    config_attributes: dict = field(default_factory=dict)
    prior: Optional[StateRecord] = None
    planned: dict = field(default_factory=dict)
    moved_from: Optional[str] = None
    state_dependencies: list[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    deposed: Optional[dict] = None

    @property
    def planned_complete(self) -> bool:
        """False when the planned map may lack provider-computed values."""
        return self.action not in (Action.CREATE, Action.REPLACE)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'address': self.address,
            'kind': self.kind,
            'action': self.action.value,
            'dependencies': sorted(self.dependencies),
        }
        if self.type:
            d['type'] = self.type
        if self.provider and self.kind != PROVIDER:
            d['provider'] = self.provider
        if self.replace_order is not None:
            d['replace_order'] = self.replace_order.value
        if self.changes:
            d['changes'] = [c.to_dict() for c in self.changes]
        if self.moved_from is not None:
            d['moved_from'] = self.moved_from
        return d


@dataclass
class Plan:
    """Ordered set of planned steps.

    Attributes:
        nodes: Key -> PlanNode
        order: Keys in a valid execution order
        destroy: Planned as a full destroy
        moved: Old address -> new address renames to apply
        instances: Base address -> expansion instance addresses
        state_serial: State document serial the plan was computed against
    """
    nodes: dict[str, PlanNode] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    destroy: bool = False
    moved: dict[str, str] = field(default_factory=dict)
    instances: dict[str, list[str]] = field(default_factory=dict)
    state_serial: Optional[int] = None

    def ordered_nodes(self) -> list[PlanNode]:
        return [self.nodes[k] for k in self.order]

    def changes(self) -> list[PlanNode]:
        """Object steps that change something, in execution order."""
        return [n for n in self.ordered_nodes() if n.kind != PROVIDER and n.action != Action.NOOP]

    def summary(self) -> dict[str, int]:
        """Counts per action over objects (deposed cleanup of a replace is not counted twice)."""
        counts = {a.value: 0 for a in Action}
        for node in self.nodes.values():
            if node.kind == RESOURCE:
                counts[node.action.value] += 1
            elif node.kind == DEPOSED and node.key.endswith(STALE_SUFFIX):
                counts[Action.DESTROY.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return bool(self.changes()) or bool(self.moved)

    def to_dict(self) -> dict:
        return {
            'destroy': self.destroy,
            'summary': self.summary(),
            'moved': dict(self.moved),
            'nodes': [n.to_dict() for n in self.ordered_nodes()],
        }


def diff_attributes(
    prior: Mapping[str, Any],
    desired: Mapping[str, Any],
    schema: ResourceSchema,
    lifecycle: Lifecycle,
) -> tuple[dict, list[AttributeChange]]:
    """Compare desired attributes with the prior ones.

    Ignored attributes keep their prior value. Computed attributes absent
    from the desired map keep their prior value and are not removals.

    Returns:
        (planned attribute map, changes)
    """
    planned: dict[str, Any] = {}
    changes: list[AttributeChange] = []
    names = list(desired) + [n for n in prior if n not in desired]

    for name in names:
        if lifecycle.ignores(name):
            if name in prior:
                planned[name] = prior[name]
            continue

        if name not in prior:
            value = desired[name]
            planned[name] = value
            kind = 'unknown' if contains_unknown(value) else 'added'
            changes.append(AttributeChange(name, kind, None, value, schema.forces_replacement(name)))
        elif name not in desired:
            if name in schema.computed:
                planned[name] = prior[name]
                continue
            changes.append(AttributeChange(name, 'removed', prior[name], None, schema.forces_replacement(name)))
        else:
            value = desired[name]
            planned[name] = value
            if not contains_unknown(value) and value == prior[name]:
                continue
            kind = 'unknown' if contains_unknown(value) else 'changed'
            changes.append(AttributeChange(name, kind, prior[name], value, schema.forces_replacement(name)))

    return planned, changes


def resolve_reference(
    ref: Reference,
    values: Callable[[str], Optional[tuple[dict, bool]]],
    instances: Mapping[str, list[str]],
) -> Any:
    """Value of a reference.

    Args:
        ref: Reference to resolve
        values: address -> (attribute map, complete) or None if unavailable
        instances: base address -> instance addresses (for references to
            an expanded object as a whole)

    A reference to an expanded object yields a list (count) or a mapping
    (for_each) of the attribute across its instances.
    """
    found = values(ref.address)
    if found is not None:
        attrs, complete = found
        return lookup_path(attrs, ref.path, complete)

    members = instances.get(ref.address)
    if members is None:
        return UNKNOWN
    keyed = []
    for address in members:
        found = values(address)
        value = lookup_path(found[0], ref.path, found[1]) if found else UNKNOWN
        keyed.append((instance_key(address), value))
    if all(isinstance(k, int) for k, _ in keyed):
        return [v for _, v in sorted(keyed, key=lambda kv: kv[0])]
    return {str(k): v for k, v in keyed}


class PlanEngine:
    """Computes plans against pinned provider schemas."""

    def __init__(self, providers: ProviderInstances):
        self.providers = providers

    def plan(self, graph: DependencyGraph, destroy: bool = False) -> Plan:
        """Classify every node.

        Raises:
            DestroyForbidden: If a prevent_destroy object would be destroyed or replaced
            CycleDetected: If destroy ordering cannot be satisfied
            UnknownResourceType, UnknownProvider: For unsupported objects
        """
        plan = Plan(destroy=destroy, moved=dict(graph.moved))
        plan.instances = self._instances(graph)

        for address in graph.topological_order():
            node = graph.nodes[address]
            if node.kind == PROVIDER:
                plan.nodes[address] = self._plan_provider(node)
                continue
            planned = self._plan_resource(node, destroy, plan)
            if planned is not None:
                plan.nodes[address] = planned

        forbidden = sorted(
            n.address for n in plan.nodes.values()
            if n.kind == RESOURCE and n.lifecycle.prevent_destroy
            and n.action in (Action.DESTROY, Action.REPLACE)
        )
        if forbidden:
            raise DestroyForbidden(forbidden)

        for key in plan.nodes:
            plan.nodes[key].dependencies &= set(plan.nodes)

        self._order_destroys(plan, graph)
        self._add_deposed(plan, graph)
        self._prune_providers(plan)

        deps = {k: n.dependencies for k, n in plan.nodes.items()}
        cycle = find_cycle(deps)
        if cycle:
            raise CycleDetected(cycle)
        plan.order = topological_sort(deps)

        summary = plan.summary()
        logger.info(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['replace']} to replace, {summary['destroy']} to destroy")
        return plan

    @staticmethod
    def _instances(graph: DependencyGraph) -> dict[str, list[str]]:
        groups: dict[str, list[str]] = {}
        for node in graph.resources():
            if node.base_address != node.address:
                groups.setdefault(node.base_address, [])
        for base in groups:
            # Instances about to be destroyed keep their edges but drop out of the value
            groups[base] = [n.address for n in graph.instances_of(base) if n.desired is not None]
        return groups

    @staticmethod
    def _plan_provider(node: GraphNode) -> PlanNode:
        return PlanNode(
            key=node.address,
            address=node.address,
            action=Action.NOOP,
            kind=PROVIDER,
            provider=node.address,
            dependencies=set(node.dependencies),
            config_attributes=dict(node.provider_config.attributes),
        )

    def _resolver(self, plan: Plan) -> Callable[[Reference], Any]:
        def values(address: str) -> Optional[tuple[dict, bool]]:
            target = plan.nodes.get(address)
            if target is None:
                return None
            if target.action == Action.DESTROY:
                return (target.prior.attributes if target.prior else {}), True
            return target.planned, target.planned_complete

        return lambda ref: resolve_reference(ref, values, plan.instances)

    def _plan_resource(self, node: GraphNode, destroy: bool, plan: Plan) -> Optional[PlanNode]:
        prior = node.prior
        state_deps = sorted(d for d in node.dependencies if not d.startswith('provider.'))
        base = PlanNode(
            key=node.address,
            address=node.address,
            action=Action.NOOP,
            type=node.type,
            provider=node.provider,
            dependencies=set(node.dependencies),
            prior=prior,
            moved_from=node.moved_from,
            state_dependencies=state_deps,
            lifecycle=node.lifecycle,
        )

        if node.desired is None or destroy:
            if prior is None:
                return None
            base.action = Action.DESTROY
            base.provider = prior.provider
            base.dependencies.add(prior.provider)
            base.planned = dict(prior.attributes)
            base.changes = [AttributeChange(k, 'removed', v, None) for k, v in prior.attributes.items()]
            return base

        obj = node.desired
        schema = self.providers.schema(obj.provider, obj.type)
        base.config_attributes = obj.attributes
        desired = substitute(obj.attributes, self._resolver(plan))

        if prior is None:
            base.action = Action.CREATE
            base.planned = desired
            base.changes = [
                AttributeChange(k, 'unknown' if contains_unknown(v) else 'added', None, v)
                for k, v in desired.items()
            ]
            return base

        planned, changes = diff_attributes(prior.attributes, desired, schema, obj.lifecycle)
        base.changes = changes
        changed = [c.name for c in changes]

        if prior.type != obj.type or (changed and schema.requires_replace(prior.attributes, planned, changed)):
            base.action = Action.REPLACE
            base.replace_order = (
                ReplaceOrder.CREATE_THEN_DESTROY if obj.lifecycle.create_before_destroy
                else ReplaceOrder.DESTROY_THEN_CREATE)
            base.planned = desired
            # The old object is deleted through the provider that created it
            base.dependencies.add(prior.provider)
        elif changed:
            base.action = Action.UPDATE
            base.planned = planned
        else:
            base.planned = planned
        return base

    @staticmethod
    def _depended_on(plan: Plan, graph: DependencyGraph, key: str) -> set[str]:
        """Addresses a node depends on now or did when last applied."""
        node = plan.nodes[key]
        result = set(graph.nodes[key].dependencies) if key in graph.nodes else set()
        if node.prior is not None:
            result.update(node.prior.dependencies)
        return {d for d in result if d in plan.nodes and plan.nodes[d].kind == RESOURCE and d != key}

    def _order_destroys(self, plan: Plan, graph: DependencyGraph) -> None:
        """Destroy nodes wait for everything that depended on them."""
        resources = [k for k, n in plan.nodes.items() if n.kind == RESOURCE]
        destroys = {k for k in resources if plan.nodes[k].action == Action.DESTROY}
        if not destroys:
            return
        depended = {k: self._depended_on(plan, graph, k) for k in resources}

        for key, node in plan.nodes.items():
            if key in destroys:
                node.dependencies = {d for d in node.dependencies if plan.nodes[d].kind != RESOURCE}
            else:
                node.dependencies -= destroys

        for key in resources:
            for dep in depended[key]:
                if dep in destroys:
                    plan.nodes[dep].dependencies.add(key)
                elif key in destroys:
                    target = plan.nodes[dep]
                    if target.action == Action.REPLACE and target.replace_order == ReplaceOrder.DESTROY_THEN_CREATE:
                        # The old object goes away before its replacement
                        target.dependencies.add(key)

    def _add_deposed(self, plan: Plan, graph: DependencyGraph) -> None:
        """Deposed nodes destroy old objects left by create-before-destroy."""
        resources = [k for k, n in plan.nodes.items() if n.kind == RESOURCE]
        depended = {k: self._depended_on(plan, graph, k) for k in resources}

        for key in resources:
            node = plan.nodes[key]
            if node.prior is not None and node.prior.deposed is not None:
                stale_key = key + STALE_SUFFIX
                plan.nodes[stale_key] = PlanNode(
                    key=stale_key,
                    address=node.address,
                    action=Action.DESTROY,
                    kind=DEPOSED,
                    type=node.prior.type,
                    provider=node.prior.provider,
                    dependencies={node.prior.provider} & set(plan.nodes),
                    prior=node.prior,
                    deposed=node.prior.deposed,
                )
                node.dependencies.add(stale_key)

        cbd = [
            k for k in resources
            if plan.nodes[k].action == Action.REPLACE
            and plan.nodes[k].replace_order == ReplaceOrder.CREATE_THEN_DESTROY
        ]
        for key in cbd:
            node = plan.nodes[key]
            dependents = {k for k in resources if key in depended[k]}
            deps = {key, node.prior.provider} | dependents
            deps |= {d + DEPOSED_SUFFIX for d in dependents if d in cbd}
            deposed_key = key + DEPOSED_SUFFIX
            plan.nodes[deposed_key] = PlanNode(
                key=deposed_key,
                address=node.address,
                action=Action.DESTROY,
                kind=DEPOSED,
                type=node.prior.type,
                provider=node.prior.provider,
                dependencies=deps & (set(plan.nodes) | {d + DEPOSED_SUFFIX for d in cbd}),
                prior=node.prior,
                deposed=dict(node.prior.attributes),
            )

    @staticmethod
    def _prune_providers(plan: Plan) -> None:
        used: set[str] = set()
        for node in plan.nodes.values():
            if node.kind != PROVIDER:
                used.add(node.provider)
                used.update(d for d in node.dependencies if d in plan.nodes and plan.nodes[d].kind == PROVIDER)
        # Providers referenced by other providers stay too
        for node in plan.nodes.values():
            if node.kind == PROVIDER and node.address in used:
                used.update(d for d in node.dependencies if d in plan.nodes and plan.nodes[d].kind == PROVIDER)
        for key in [k for k, n in plan.nodes.items() if n.kind == PROVIDER and k not in used]:
            del plan.nodes[key]
            for node in plan.nodes.values():
                node.dependencies.discard(key)

