"""Plan executor.

Walks the plan in dependency order, running eligible nodes concurrently on
a bounded worker pool. Each node invokes its provider operation and then
writes or removes its state record before dependents are released.

Failure handling:
- A failed node's dependents are skipped (never attempted, no state written)
- Unrelated subgraphs continue
- cancel() stops scheduling; in-flight operations finish and persist, the
  rest are marked cancelled
- A state ConcurrencyError stops scheduling, drains in-flight nodes and is
  re-raised with the partial report attached as .report
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from common import call_provider, contains_unknown, substitute
from engine.graph import PROVIDER
from engine.plan import DEPOSED, Action, Plan, PlanNode, ReplaceOrder, diff_attributes, resolve_reference
from engine.state import StateLock, StateRecord, StateStore
from errors import (
    ConcurrencyError,
    LandformError,
    ResourceNotFound,
    StalePlan,
    UnknownValue,
)
from providers.base import ProviderInstances

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class NodeStatus(str, Enum):
    APPLIED = 'applied'
    UNCHANGED = 'unchanged'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    CANCELLED = 'cancelled'


@dataclass
class NodeOutcome:
    """Result of one plan node."""
    key: str
    address: str
    action: Action
    status: NodeStatus
    kind: str = 'resource'
    message: str = ''
    duration: float = 0.0

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'address': self.address,
            'kind': self.kind,
            'action': self.action.value,
            'status': self.status.value,
            'duration': round(self.duration, 3),
        }
        if self.message:
            d['message'] = self.message
        return d


@dataclass
class ApplyReport:
    """Cycle-level report of node outcomes.

    Attributes:
        outcomes: Node outcomes in completion order
        interrupted: Stopped early by cancellation or a state conflict
        started_at: Timestamp when apply started
        completed_at: Timestamp when apply finished
    """
    outcomes: list[NodeOutcome] = field(default_factory=list)
    interrupted: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def addresses(self, status: NodeStatus) -> list[str]:
        return [o.key for o in self.outcomes if o.status == status and o.kind != PROVIDER]

    @property
    def applied(self) -> list[str]:
        return self.addresses(NodeStatus.APPLIED)

    @property
    def failed(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.status == NodeStatus.FAILED]

    @property
    def skipped(self) -> list[str]:
        return self.addresses(NodeStatus.SKIPPED)

    @property
    def cancelled(self) -> list[str]:
        return self.addresses(NodeStatus.CANCELLED)

    @property
    def success(self) -> bool:
        return not self.interrupted and all(
            o.status in (NodeStatus.APPLIED, NodeStatus.UNCHANGED) for o in self.outcomes)

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def summary(self) -> dict[str, int]:
        counts = {s.value: 0 for s in NodeStatus}
        for outcome in self.outcomes:
            if outcome.kind != PROVIDER:
                counts[outcome.status.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'interrupted': self.interrupted,
            'duration': round(self.duration, 3),
            'summary': self.summary(),
            'outcomes': [o.to_dict() for o in self.outcomes],
        }


_BLOCKING = (NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.CANCELLED)


class Executor:
    """Applies plans against a state store.

    Args:
        store: State store (caller holds its lock)
        providers: Pinned provider instances
        parallelism: Maximum concurrent nodes
        operation_timeout: Seconds per provider operation (None = no limit)
    """

    def __init__(
        self,
        store: StateStore,
        providers: ProviderInstances,
        parallelism: int = 10,
        operation_timeout: Optional[float] = None,
    ):
        if parallelism < 1:
            raise ValueError(f"parallelism must be at least 1, got {parallelism}")
        self.store = store
        self.providers = providers
        self.parallelism = parallelism
        self.operation_timeout = operation_timeout
        self._cancel = threading.Event()
        self._mutex = threading.Lock()
        self._outputs: dict[str, dict] = {}
        self._serials: dict[str, int] = {}

    def cancel(self) -> None:
        """Stop scheduling new nodes; in-flight nodes finish."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; waiting for in-flight operations")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(
        self,
        plan: Plan,
        lock: StateLock,
        on_outcome: Optional[Callable[[NodeOutcome], None]] = None,
    ) -> ApplyReport:
        """Apply a plan and collect every node outcome.

        Raises:
            ConcurrencyError: On state conflicts, with .report attached
        """
        report = ApplyReport(started_at=time.time())
        try:
            for outcome in self.stream(plan, lock):
                report.outcomes.append(outcome)
                if on_outcome is not None:
                    on_outcome(outcome)
        except ConcurrencyError as e:
            report.interrupted = True
            report.completed_at = time.time()
            e.report = report
            raise
        report.interrupted = self._cancel.is_set()
        report.completed_at = time.time()
        return report

    def stream(self, plan: Plan, lock: StateLock) -> Iterator[NodeOutcome]:
        """Yield node outcomes as nodes finish."""
        if plan.state_serial is not None and plan.state_serial != self.store.serial:
            raise StalePlan(plan.state_serial, self.store.serial)

        self._outputs = {}
        self._serials = {}
        for node in plan.nodes.values():
            if node.kind != PROVIDER and node.prior is not None:
                self._outputs.setdefault(node.address, node.prior.attributes)
                self._serials.setdefault(node.address, node.prior.serial)

        for source, target in sorted(plan.moved.items()):
            self.store.move(source, target, lock)

        pending = {key: set(plan.nodes[key].dependencies) for key in plan.order}
        status: dict[str, NodeStatus] = {}
        fatal: Optional[ConcurrencyError] = None

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix='apply') as pool:
            running: dict[Future, str] = {}

            while pending or running:
                if not self._cancel.is_set() and fatal is None:
                    for outcome in self._schedule(plan, lock, pending, status, running, pool):
                        yield outcome

                if not running:
                    if self._cancel.is_set() or fatal is not None:
                        break
                    if pending and not self._ready(pending, status):
                        # Unreachable for an acyclic plan
                        raise RuntimeError(f"Plan has unsatisfiable dependencies: {sorted(pending)}")
                    continue

                done, _ = wait(list(running), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    key = running.pop(future)
                    try:
                        outcome = future.result()
                    except ConcurrencyError as e:
                        logger.error(f"State conflict at {key}: {e}")
                        fatal = fatal or e
                        outcome = NodeOutcome(
                            key, plan.nodes[key].address, plan.nodes[key].action,
                            NodeStatus.FAILED, plan.nodes[key].kind, e.message)
                    status[key] = outcome.status
                    yield outcome

            for key in sorted(pending, key=plan.order.index):
                node = plan.nodes[key]
                status[key] = NodeStatus.CANCELLED
                yield NodeOutcome(key, node.address, node.action, NodeStatus.CANCELLED, node.kind,
                                  'not started: apply interrupted')

        if fatal is not None:
            raise fatal

    @staticmethod
    def _ready(pending: dict[str, set[str]], status: dict[str, NodeStatus]) -> list[str]:
        return [k for k, deps in pending.items() if all(d in status for d in deps)]

    def _schedule(self, plan, lock, pending, status, running, pool) -> Iterator[NodeOutcome]:
        """Start ready nodes up to the parallelism limit; skip blocked ones."""
        progressed = True
        while progressed:
            progressed = False
            for key in sorted(self._ready(pending, status), key=plan.order.index):
                node = plan.nodes[key]
                blocked = sorted(d for d in node.dependencies if status[d] in _BLOCKING)
                if blocked:
                    del pending[key]
                    status[key] = NodeStatus.SKIPPED
                    logger.warning(f"[skip] {key}: dependency did not complete ({', '.join(blocked)})")
                    yield NodeOutcome(key, node.address, node.action, NodeStatus.SKIPPED, node.kind,
                                      f"dependency did not complete: {', '.join(blocked)}")
                    progressed = True
                    continue
                if len(running) >= self.parallelism:
                    return
                del pending[key]
                running[pool.submit(self._run_node, node, plan, lock)] = key

    # -- node execution ---------------------------------------------------

    def _run_node(self, node: PlanNode, plan: Plan, lock: StateLock) -> NodeOutcome:
        start = time.time()
        try:
            message = self._execute(node, plan, lock)
        except ConcurrencyError:
            raise
        except LandformError as e:
            logger.error(f"[{node.action.value}] {node.key} failed: {e}")
            return NodeOutcome(node.key, node.address, node.action, NodeStatus.FAILED, node.kind,
                               str(e), time.time() - start)

        status = NodeStatus.APPLIED
        if node.kind == PROVIDER or node.action == Action.NOOP:
            status = NodeStatus.UNCHANGED
        return NodeOutcome(node.key, node.address, node.action, status, node.kind,
                           message, time.time() - start)

    def _call(self, operation: str, address: str, func: Callable, *args) -> Any:
        return call_provider(operation, address, func, *args, timeout=self.operation_timeout)

    def _values(self, address: str) -> Optional[tuple[dict, bool]]:
        with self._mutex:
            attrs = self._outputs.get(address)
        return (attrs, True) if attrs is not None else None

    def _resolve(self, node: PlanNode, plan: Plan) -> dict:
        resolved = substitute(
            node.config_attributes,
            lambda ref: resolve_reference(ref, self._values, plan.instances))
        unknown = [k for k, v in resolved.items() if contains_unknown(v)]
        if unknown:
            raise UnknownValue(node.address, unknown)
        return resolved

    def _write(self, node: PlanNode, attributes: dict, lock: StateLock,
               resource_id: Optional[str], deposed: Optional[dict] = None) -> int:
        record = StateRecord(
            address=node.address,
            type=node.type,
            provider=node.provider,
            provider_version=str(self.providers.version_of(node.provider)),
            attributes=attributes,
            dependencies=list(node.state_dependencies),
            resource_id=resource_id,
            deposed=deposed,
        )
        expected = self._serials.get(node.address, 0)
        serial = self.store.write(node.address, record, expected, lock)
        with self._mutex:
            self._serials[node.address] = serial
            self._outputs[node.address] = attributes
        return serial

    def _remove(self, address: str, lock: StateLock) -> None:
        self.store.remove(address, self._serials.get(address, 0), lock)
        with self._mutex:
            self._serials[address] = 0
            self._outputs.pop(address, None)

    def _delete(self, address: str, provider: str, type_name: str, attributes: dict) -> None:
        resource = self.providers.resource(provider, type_name)
        try:
            self._call('delete', address, resource.delete, attributes)
        except ResourceNotFound:
            logger.warning(f"[destroy] {address} already gone")

    def _create(self, node: PlanNode, plan: Plan) -> tuple[dict, str]:
        attrs = self._resolve(node, plan)
        resource = self.providers.resource(node.provider, node.type)
        new_attrs, resource_id = self._call('create', node.address, resource.create, attrs)
        return new_attrs, resource_id

    def _execute(self, node: PlanNode, plan: Plan, lock: StateLock) -> str:
        """Run one node. Returns a short description of what was done."""
        address = node.address

        if node.kind == PROVIDER:
            attrs = self._resolve(node, plan)
            self._call('configure', address, self.providers.configure, address, attrs)
            return 'configured'

        if node.kind == DEPOSED:
            logger.info(f"[destroy] {node.key} ...")
            self._delete(address, node.provider, node.type, node.deposed or {})
            current = self.store.get(address)
            if current is not None:
                current.deposed = None
                serial = self.store.write(address, current, self._serials.get(address, 0), lock)
                with self._mutex:
                    self._serials[address] = serial
            return 'destroyed deposed object'

        action = node.action
        if action == Action.NOOP:
            return ''

        logger.info(f"[{action.value}] {address} ...")
        prior = node.prior

        if action == Action.CREATE:
            new_attrs, resource_id = self._create(node, plan)
            serial = self._write(node, new_attrs, lock, resource_id)
            logger.info(f"[create] {address} complete (id={resource_id}, serial={serial})")
            return f'created (id={resource_id})'

        if action == Action.UPDATE:
            resolved = self._resolve(node, plan)
            schema = self.providers.schema(node.provider, node.type)
            desired, _ = diff_attributes(prior.attributes, resolved, schema, node.lifecycle)
            resource = self.providers.resource(node.provider, node.type)
            applied = self._call('update', address, resource.update, prior.attributes, desired)
            self._write(node, applied, lock, prior.resource_id)
            return 'updated'

        if action == Action.DESTROY:
            self._delete(address, prior.provider, prior.type, prior.attributes)
            self._remove(address, lock)
            return 'destroyed'

        if node.replace_order == ReplaceOrder.CREATE_THEN_DESTROY:
            new_attrs, resource_id = self._create(node, plan)
            self._write(node, new_attrs, lock, resource_id, deposed=prior.attributes)
            return f'created replacement (id={resource_id}); old object deposed'

        self._delete(address, prior.provider, prior.type, prior.attributes)
        self._remove(address, lock)
        new_attrs, resource_id = self._create(node, plan)
        self._write(node, new_attrs, lock, resource_id)
        return f'replaced (id={resource_id})'
