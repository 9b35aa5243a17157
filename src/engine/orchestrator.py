"""Plan+apply cycle orchestration.

One cycle holds the state lock from start to finish:

1. Acquire the state lock (AlreadyLocked if another run holds it)
2. Resolve provider versions and update the lock file
3. Optionally refresh state through providers (drift is persisted
   only by apply)
4. Build the dependency graph and compute the plan
5. Optionally confirm, then execute the plan
6. Release the lock
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from common import provider_name
from config import EngineConfig
from configuration import Configuration, load_configuration
from engine.executor import ApplyReport, Executor, NodeOutcome
from engine.graph import GraphBuilder
from engine.plan import Plan, PlanEngine
from engine.refresh import Refresher, RefreshResult
from engine.state import StateLock, StateStore
from providers import default_registry
from providers.base import PluginRegistry, ProviderInstances
from resolver import LocalPluginSource, LockEntry, LockFile, RegistryClient, resolve
from resolver.version import ConstraintSet

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome of one plan or apply cycle.

    Attributes:
        plan: The computed plan
        report: Apply report (None when nothing was applied)
        refresh: Refresh outcome (None when refresh was skipped)
        confirmed: False when the confirmation callback declined
    """
    plan: Plan
    report: Optional[ApplyReport] = None
    refresh: Optional[RefreshResult] = None
    confirmed: bool = True
    providers: dict[str, LockEntry] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        if not self.confirmed:
            return False
        return self.report.success if self.report is not None else True


class Orchestrator:
    """Runs plan and apply cycles for one working directory.

    Args:
        config: Engine settings
        registry: Installed provider plugins (defaults to the bundled ones)
        store: State store (defaults to the file at config.state_path)
        source: Available-version source for resolution (defaults to the
            registry client when registry_url is set, else installed plugins)
    """

    def __init__(
        self,
        config: EngineConfig,
        registry: Optional[PluginRegistry] = None,
        store: Optional[StateStore] = None,
        source=None,
    ):
        self.config = config
        self.registry = registry or default_registry()
        self.store = store if store is not None else StateStore(config.state_path)
        self.source = source
        self.lock_file = LockFile(config.lock_file)
        self._cancel = threading.Event()
        self._executor: Optional[Executor] = None

    def load_configuration(self) -> Configuration:
        return load_configuration(self.config.config_file)

    def _version_source(self):
        if self.source is not None:
            return self.source
        if self.config.registry_url:
            return RegistryClient(self.config.registry_url, namespace=self.config.plugin_namespace)
        return LocalPluginSource(self.registry)

    def _available(self, names: list[str], configuration: Configuration) -> dict:
        source = self._version_source()
        if isinstance(source, RegistryClient):
            return {name: source.versions(configuration.source_of(name)) for name in names}
        return source.available_versions(names)

    def lock_providers(self, configuration: Configuration, upgrade: bool = False) -> dict[str, LockEntry]:
        """Resolve provider versions and update the lock file.

        Providers that only appear in state (orphans awaiting destruction)
        are resolved too, without constraints.

        Raises:
            ConstraintUnsatisfiable, ChecksumMismatch, RegistryError
        """
        constraint_sets = configuration.constraint_sets()
        for record in self.store.snapshot().values():
            constraint_sets.setdefault(provider_name(record.provider), ConstraintSet())

        existing = dict(self.store.providers())
        existing.update(self.lock_file.load())

        available = self._available(sorted(constraint_sets), configuration)
        entries = resolve(constraint_sets, available, existing_lock=existing, upgrade=upgrade)
        self.lock_file.update(entries)
        return entries

    def _prepare(
        self,
        lock: StateLock,
        configuration: Configuration,
        destroy: bool,
        refresh: Optional[bool],
        persist: bool = False,
    ) -> tuple[Plan, ProviderInstances, dict[str, LockEntry], Optional[RefreshResult]]:
        entries = self.lock_providers(configuration)
        if persist:
            self.store.set_providers(entries, lock)
        providers = ProviderInstances(self.registry, {n: e.version for n, e in entries.items()})

        refreshed = None
        snapshot = None
        if self.config.refresh if refresh is None else refresh:
            refresher = Refresher(self.store, providers, self.config.operation_timeout)
            refreshed = refresher.refresh(lock, configuration, persist=persist)
            snapshot = refreshed.snapshot

        graph = GraphBuilder().build(configuration, self.store.snapshot() if snapshot is None else snapshot)
        plan = PlanEngine(providers).plan(graph, destroy=destroy)
        plan.state_serial = self.store.serial
        return plan, providers, entries, refreshed

    def plan(
        self,
        destroy: bool = False,
        refresh: Optional[bool] = None,
        configuration: Optional[Configuration] = None,
    ) -> CycleResult:
        """Compute a plan without applying it."""
        configuration = configuration or self.load_configuration()
        with self.store.begin_transaction('plan') as lock:
            plan, _, entries, refreshed = self._prepare(lock, configuration, destroy, refresh)
        return CycleResult(plan=plan, refresh=refreshed, providers=entries)

    def apply(
        self,
        destroy: bool = False,
        refresh: Optional[bool] = None,
        confirm: Optional[Callable[[Plan], bool]] = None,
        on_outcome: Optional[Callable[[NodeOutcome], None]] = None,
        configuration: Optional[Configuration] = None,
        parallelism: Optional[int] = None,
    ) -> CycleResult:
        """Plan and apply in one locked cycle.

        Args:
            destroy: Destroy every object in state
            refresh: Override the refresh setting
            confirm: Called with the plan before applying; False aborts
            on_outcome: Called for each node outcome as it completes
            configuration: Desired configuration (loaded from disk if None)
            parallelism: Override the parallelism setting

        Raises:
            LandformError: Configuration, plan and concurrency errors
        """
        configuration = configuration or self.load_configuration()
        operation = 'destroy' if destroy else 'apply'

        with self.store.begin_transaction(operation) as lock:
            plan, providers, entries, refreshed = self._prepare(
                lock, configuration, destroy, refresh, persist=True)
            result = CycleResult(plan=plan, refresh=refreshed, providers=entries)

            if not plan.has_changes:
                logger.info("No changes. Infrastructure matches the configuration.")
                result.report = ApplyReport()
                return result

            if confirm is not None and not confirm(plan):
                logger.info(f"{operation.capitalize()} cancelled at confirmation")
                result.confirmed = False
                return result

            executor = Executor(
                self.store,
                providers,
                parallelism=parallelism or self.config.parallelism,
                operation_timeout=self.config.operation_timeout,
            )
            self._executor = executor
            if self._cancel.is_set():
                executor.cancel()
            try:
                result.report = executor.apply(plan, lock, on_outcome)
            finally:
                self._executor = None

        summary = result.report.summary()
        logger.info(
            f"{operation.capitalize()} complete: {summary['applied']} applied, "
            f"{summary['failed']} failed, {summary['skipped']} skipped, "
            f"{summary['cancelled']} cancelled")
        return result

    def cancel(self) -> None:
        """Request a graceful stop of the running apply."""
        self._cancel.set()
        if self._executor is not None:
            self._executor.cancel()
