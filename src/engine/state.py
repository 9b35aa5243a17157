"""State store: last-applied attributes of every object address.

The store is either file-backed (a JSON document) or memory-only. Mutations
require the store's exclusive lock, obtained with begin_transaction() and
held for a whole plan+apply cycle. Every write and removal is persisted
before it returns, so an interrupted apply leaves state reflecting exactly
what completed.

Persisted layout:

    {
      "format_version": 1,
      "lineage": "<uuid>",
      "serial": <document serial>,
      "records": [{"address": ..., "serial": ..., "attributes": {...}}, ...],
      "providers": {"random": {"version": "3.6.0", ...}}
    }
"""

import copy
import json
import logging
import os
import socket
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from errors import (
    AddressConflict,
    AlreadyLocked,
    ConcurrentModification,
    ConfigurationError,
    NotLocked,
    StateFormatError,
)
from resolver.lock import LockEntry, entries_from_dict, entries_to_dict

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


@dataclass
class StateRecord:
    """Persisted snapshot of one object address.

    Attributes:
        address: Object address
        type: Resource type
        provider: Provider configuration address used
        provider_version: Provider version that last wrote the record
        serial: Per-record serial, +1 on every successful write
        attributes: Last-applied attribute map
        dependencies: Addresses the object depended on when last applied
        resource_id: Provider-assigned identifier
        deposed: Old object awaiting destruction during create-before-destroy
    """
    address: str
    type: str
    provider: str
    provider_version: str = ''
    serial: int = 0
    attributes: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    resource_id: Optional[str] = None
    deposed: Optional[dict] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'type': self.type,
            'provider': self.provider,
            'provider_version': self.provider_version,
            'serial': self.serial,
            'attributes': self.attributes,
            'dependencies': sorted(self.dependencies),
        }
        if self.resource_id is not None:
            d['resource_id'] = self.resource_id
        if self.deposed is not None:
            d['deposed'] = self.deposed
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        try:
            return cls(
                address=data['address'],
                type=data['type'],
                provider=data['provider'],
                provider_version=data.get('provider_version', ''),
                serial=int(data.get('serial', 0)),
                attributes=dict(data.get('attributes') or {}),
                dependencies=list(data.get('dependencies') or []),
                resource_id=data.get('resource_id'),
                deposed=data.get('deposed'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateFormatError(f"Invalid state record {data!r}: {e}")


@dataclass
class LockInfo:
    """Who holds the state lock."""
    id: str
    operation: str
    who: str
    created: str

    def to_dict(self) -> dict:
        return {'id': self.id, 'operation': self.operation, 'who': self.who, 'created': self.created}

    @classmethod
    def from_dict(cls, data: dict) -> 'LockInfo':
        return cls(
            id=data.get('id', ''),
            operation=data.get('operation', ''),
            who=data.get('who', ''),
            created=data.get('created', ''),
        )


class StateLock:
    """Handle for the store's exclusive lock. Usable as a context manager."""

    def __init__(self, store: 'StateStore', info: LockInfo):
        self.store = store
        self.info = info
        self.released = False

    @property
    def id(self) -> str:
        return self.info.id

    def release(self) -> None:
        if not self.released:
            self.store._release(self)
            self.released = True

    def __enter__(self) -> 'StateLock':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _who() -> str:
    return f"{os.environ.get('USER', 'unknown')}@{socket.gethostname()}"


class StateStore:
    """Locked read/write access to state records.

    Args:
        path: State document location (None = memory only)
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self.lock_path = self.path.with_name(self.path.name + '.lock') if self.path else None
        self.lineage = str(uuid.uuid4())
        self.serial = 0
        self._records: dict[str, StateRecord] = {}
        self._providers: dict = {}
        self._held: Optional[StateLock] = None
        self._mutex = threading.RLock()
        self._load()

    # -- loading / persistence ------------------------------------------------

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateFormatError(f"State file {self.path} is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise StateFormatError(f"State file {self.path} must be a JSON object")

        version = data.get('format_version')
        if version != FORMAT_VERSION:
            raise StateFormatError(
                f"Unsupported state format version {version!r} in {self.path} "
                f"(supported: {FORMAT_VERSION})")

        records = [StateRecord.from_dict(r) for r in data.get('records') or []]
        self._records = {r.address: r for r in records}
        self._providers = dict(data.get('providers') or {})
        self.lineage = data.get('lineage') or self.lineage
        self.serial = int(data.get('serial', 0))
        logger.debug(f"Loaded {len(self._records)} state records from {self.path}")

    def _persist(self) -> None:
        self.serial += 1
        if self.path is None:
            return
        data = {
            'format_version': FORMAT_VERSION,
            'lineage': self.lineage,
            'serial': self.serial,
            'records': [self._records[a].to_dict() for a in sorted(self._records)],
            'providers': self._providers,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    # -- reads ----------------------------------------------------------------

    def get(self, address: str) -> Optional[StateRecord]:
        with self._mutex:
            record = self._records.get(address)
            return copy.deepcopy(record) if record else None

    def addresses(self) -> list[str]:
        with self._mutex:
            return sorted(self._records)

    def snapshot(self) -> dict[str, StateRecord]:
        """Deep copy of the last committed records."""
        with self._mutex:
            return copy.deepcopy(self._records)

    def providers(self) -> dict[str, LockEntry]:
        """Provider lock entries recorded with the state."""
        with self._mutex:
            return entries_from_dict(self._providers)

    # -- locking --------------------------------------------------------------

    def begin_transaction(self, operation: str = 'apply') -> StateLock:
        """Acquire the exclusive lock.

        Raises:
            AlreadyLocked: Immediately, if another run holds the lock
        """
        info = LockInfo(
            id=str(uuid.uuid4()),
            operation=operation,
            who=_who(),
            created=datetime.now(timezone.utc).isoformat(timespec='seconds'),
        )
        with self._mutex:
            if self._held is not None:
                raise AlreadyLocked(self._held.info.to_dict())
            if self.lock_path is not None:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                try:
                    fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                except FileExistsError:
                    raise AlreadyLocked(self._read_lock_file())
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(info.to_dict(), f)
            self._held = StateLock(self, info)
            # Another run may have committed since this store was opened
            try:
                self._load()
            except StateFormatError:
                self._held.release()
                raise
        logger.debug(f"Acquired state lock {info.id} for {operation}")
        return self._held

    def _read_lock_file(self) -> Optional[dict]:
        try:
            with open(self.lock_path, encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError):
            return None

    def _release(self, lock: StateLock) -> None:
        with self._mutex:
            if self._held is not lock:
                return
            if self.lock_path is not None:
                holder = self._read_lock_file()
                if holder is None or holder.get('id') == lock.id:
                    self.lock_path.unlink(missing_ok=True)
            self._held = None
        logger.debug(f"Released state lock {lock.id}")

    def lock_info(self) -> Optional[LockInfo]:
        """Current lock holder, if any."""
        with self._mutex:
            if self._held is not None:
                return self._held.info
            if self.lock_path is not None and self.lock_path.exists():
                data = self._read_lock_file()
                return LockInfo.from_dict(data or {})
        return None

    def force_unlock(self, lock_id: str) -> None:
        """Remove a lock left behind by a crashed run.

        Raises:
            NotLocked: If the state is not locked or the id does not match
        """
        with self._mutex:
            info = self.lock_info()
            if info is None:
                raise NotLocked("State is not locked")
            if info.id != lock_id:
                raise NotLocked(f"Lock id '{lock_id}' does not match current lock '{info.id}'")
            if self.lock_path is not None:
                self.lock_path.unlink(missing_ok=True)
            if self._held is not None:
                self._held.released = True
                self._held = None
        logger.warning(f"Force-unlocked state lock {lock_id}")

    def _require(self, lock: Optional[StateLock]) -> None:
        if lock is None or lock.released or lock is not self._held:
            raise NotLocked()

    # -- mutations ------------------------------------------------------------

    def write(self, address: str, record: StateRecord, expected_serial: int,
              lock: Optional[StateLock] = None) -> int:
        """Store a record if the caller's expected serial matches.

        Returns:
            The record's new serial

        Raises:
            NotLocked: If lock is not the held lock
            ConcurrentModification: On serial mismatch
        """
        with self._mutex:
            self._require(lock)
            current = self._records.get(address)
            actual = current.serial if current else 0
            if expected_serial != actual:
                raise ConcurrentModification(address, expected_serial, actual)
            stored = copy.deepcopy(record)
            stored.address = address
            stored.serial = actual + 1
            self._records[address] = stored
            self._persist()
            return stored.serial

    def remove(self, address: str, expected_serial: int, lock: Optional[StateLock] = None) -> None:
        """Remove a record if the caller's expected serial matches."""
        with self._mutex:
            self._require(lock)
            current = self._records.get(address)
            actual = current.serial if current else 0
            if expected_serial != actual:
                raise ConcurrentModification(address, expected_serial, actual)
            if current is None:
                return
            del self._records[address]
            self._persist()

    def move(self, source: str, target: str, lock: Optional[StateLock] = None) -> None:
        """Rename a record, keeping its serial.

        Raises:
            ConfigurationError: If source has no record
            AddressConflict: If target already has a record
        """
        with self._mutex:
            self._require(lock)
            if source not in self._records:
                raise ConfigurationError("E100", f"No state record at '{source}'")
            if target in self._records:
                raise AddressConflict(source, target)
            record = self._records.pop(source)
            record.address = target
            self._records[target] = record
            for other in self._records.values():
                other.dependencies = [target if d == source else d for d in other.dependencies]
            self._persist()
        logger.info(f"Moved state {source} -> {target}")

    def set_providers(self, entries: dict[str, LockEntry], lock: Optional[StateLock] = None) -> None:
        """Record the provider lock entries used for this state."""
        with self._mutex:
            self._require(lock)
            data = entries_to_dict(entries)
            if data == self._providers:
                return
            self._providers = data
            self._persist()
