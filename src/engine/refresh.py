"""Drift detection.

Reads every recorded object through its provider before planning and
returns a refreshed copy of the records. Objects the provider no longer
finds are dropped from the copy (they will be planned for creation again);
objects whose live attributes differ take the live values so the plan diffs
against reality.

The store itself is only rewritten when persist is requested, which the
apply cycle does; a plan leaves state untouched.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from common import UNKNOWN, Reference, call_provider, contains_unknown, lookup_path, substitute
from configuration import Configuration
from engine.state import StateLock, StateRecord, StateStore
from errors import ConcurrencyError, LandformError, ResourceNotFound
from providers.base import ProviderInstances

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """Outcome of a refresh pass.

    Attributes:
        snapshot: Refreshed records by address (what planning should diff against)
    """
    drifted: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    snapshot: dict[str, StateRecord] = field(default_factory=dict, repr=False)

    @property
    def changed(self) -> bool:
        return bool(self.drifted or self.removed)


class Refresher:
    """Refreshes state records from their providers.

    Args:
        store: State store (caller holds its lock)
        providers: Pinned provider instances
        operation_timeout: Seconds per provider read (None = no limit)
    """

    def __init__(self, store: StateStore, providers: ProviderInstances,
                 operation_timeout: Optional[float] = None):
        self.store = store
        self.providers = providers
        self.operation_timeout = operation_timeout

    def _configure(self, configuration: Optional[Configuration], snapshot: dict) -> set[str]:
        """Configure every provider used by state. Returns addresses that could not be configured."""
        unavailable: set[str] = set()
        addresses = sorted({r.provider for r in snapshot.values()})

        def resolve(ref: Reference):
            record = snapshot.get(ref.address)
            return lookup_path(record.attributes, ref.path) if record else UNKNOWN

        for address in addresses:
            config = configuration.providers.get(address) if configuration else None
            attrs = substitute(config.attributes, resolve) if config else {}
            if any(contains_unknown(v) for v in attrs.values()):
                logger.debug(f"Skipping refresh through {address}: configuration not yet known")
                unavailable.add(address)
                continue
            try:
                call_provider('configure', address, self.providers.configure, address, attrs,
                              timeout=self.operation_timeout)
            except LandformError as e:
                logger.warning(f"Cannot configure {address} for refresh: {e}")
                unavailable.add(address)
        return unavailable

    def refresh(
        self,
        lock: StateLock,
        configuration: Optional[Configuration] = None,
        persist: bool = False,
    ) -> RefreshResult:
        """Read every record and collect drift.

        Provider failures are reported per address and leave the record
        as it was. With persist, drift is written to the store under lock
        and state conflicts propagate.
        """
        snapshot = self.store.snapshot()
        result = RefreshResult(snapshot=snapshot)
        if not snapshot:
            return result

        unavailable = self._configure(configuration, snapshot)

        for address in sorted(snapshot):
            record = snapshot[address]
            if record.provider in unavailable:
                result.unchanged.append(address)
                continue
            try:
                resource = self.providers.resource(record.provider, record.type)
                live = call_provider('read', address, resource.read, dict(record.attributes),
                                     timeout=self.operation_timeout)
            except ResourceNotFound:
                logger.warning(f"[refresh] {address} no longer exists")
                del snapshot[address]
                if persist:
                    self.store.remove(address, record.serial, lock)
                result.removed.append(address)
                continue
            except ConcurrencyError:
                raise
            except LandformError as e:
                logger.error(f"[refresh] {address} failed: {e}")
                result.errors[address] = str(e)
                continue

            if live == record.attributes:
                result.unchanged.append(address)
                continue

            logger.info(f"[refresh] {address} drifted from recorded state")
            record.attributes = live
            if persist:
                record.serial = self.store.write(address, record, record.serial, lock)
            result.drifted.append(address)

        logger.info(
            f"Refresh: {len(result.drifted)} drifted, {len(result.removed)} removed, "
            f"{len(result.errors)} failed")
        return result
