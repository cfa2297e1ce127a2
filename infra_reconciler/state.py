"""
Infra Reconciler - State Store

Persists the last-known remote state of every managed resource.
The file backend keeps one JSON document per resource identity and
replaces it atomically, so a crash mid-apply loses at most the
in-flight operation's result.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional
import json
import logging
import os
import tempfile
import threading

from pydantic import ValidationError

from infra_reconciler.models import ResourceIdentity, StateRecord

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """
    Exception raised when the state store cannot read or persist a record.

    Fatal for a run: consistency between remote and remembered state
    can no longer be guaranteed.
    """

    def __init__(
        self,
        message: str,
        identity: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.identity = identity
        self.original_error = original_error
        super().__init__(self.message)


class StateStore(ABC):
    """Abstract store of StateRecords keyed by resource identity."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        """Per-identity write lock."""
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @abstractmethod
    def get(self, identity: ResourceIdentity) -> Optional[StateRecord]:
        """Return the record for an identity, or None."""

    @abstractmethod
    def put(self, record: StateRecord) -> None:
        """Durably store a record."""

    @abstractmethod
    def delete(self, identity: ResourceIdentity) -> None:
        """Remove a record; missing records are ignored."""

    @abstractmethod
    def list_records(self) -> List[StateRecord]:
        """All records sorted by identity key."""

    def all(self) -> Dict[str, StateRecord]:
        return {record.key: record for record in self.list_records()}

    def __len__(self) -> int:
        return len(self.list_records())


class InMemoryStateStore(StateStore):
    """State store kept in process memory (tests, dry runs)."""

    def __init__(self, records: Optional[List[StateRecord]] = None):
        super().__init__()
        self._records: Dict[str, StateRecord] = {}
        for record in records or []:
            self._records[record.key] = record

    def get(self, identity: ResourceIdentity) -> Optional[StateRecord]:
        record = self._records.get(identity.key)
        return record.model_copy(deep=True) if record else None

    def put(self, record: StateRecord) -> None:
        with self._lock_for(record.key):
            self._records[record.key] = record.model_copy(deep=True)

    def delete(self, identity: ResourceIdentity) -> None:
        with self._lock_for(identity.key):
            self._records.pop(identity.key, None)

    def list_records(self) -> List[StateRecord]:
        return [self._records[k].model_copy(deep=True) for k in sorted(self._records)]


def _fsync_directory(directory: Path) -> None:
    """Flush a rename or unlink in *directory* to disk."""
    if os.name == "nt":
        # Directories cannot be opened for fsync on Windows
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class FileStateStore(StateStore):
    """
    File-backed state store.

    Directory structure:
    <base_path>/
        <type>/
            <name>.json     - one StateRecord per resource
    """

    def __init__(self, base_path: str = "./state"):
        """Initialize the store, creating the base directory if needed."""
        super().__init__()
        self.base_path = Path(base_path)
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory: {e}", original_error=e)
        logger.info(f"State store initialized at: {self.base_path.absolute()}")

    def _record_path(self, identity: ResourceIdentity) -> Path:
        return self.base_path / identity.type / f"{identity.name}.json"

    def get(self, identity: ResourceIdentity) -> Optional[StateRecord]:
        path = self._record_path(identity)
        if not path.exists():
            return None
        return self._load(path, identity.key)

    def put(self, record: StateRecord) -> None:
        """Write the record to a temp file, fsync, then atomically replace."""
        path = self._record_path(record.identity)
        payload = json.dumps(record.model_dump(mode="json"), indent=2, default=str)

        with self._lock_for(record.key):
            tmp_name = None
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
                )
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
                _fsync_directory(path.parent)
            except OSError as e:
                if tmp_name and os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise StateStoreError(
                    f"Cannot persist state for {record.key}: {e}",
                    identity=record.key,
                    original_error=e,
                )

        logger.debug(f"Persisted state record: {record.key}")

    def delete(self, identity: ResourceIdentity) -> None:
        path = self._record_path(identity)
        with self._lock_for(identity.key):
            try:
                path.unlink()
                _fsync_directory(path.parent)
            except FileNotFoundError:
                return
            except OSError as e:
                raise StateStoreError(
                    f"Cannot delete state for {identity.key}: {e}",
                    identity=identity.key,
                    original_error=e,
                )
        logger.debug(f"Deleted state record: {identity.key}")

    def list_records(self) -> List[StateRecord]:
        records = []
        if not self.base_path.exists():
            return records
        for type_dir in sorted(self.base_path.iterdir()):
            if not type_dir.is_dir() or type_dir.name.startswith("."):
                continue
            for path in sorted(type_dir.glob("*.json")):
                key = f"{type_dir.name}.{path.stem}"
                records.append(self._load(path, key))
        return sorted(records, key=lambda r: r.key)

    def _load(self, path: Path, key: str) -> StateRecord:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return StateRecord.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            raise StateStoreError(
                f"Cannot read state for {key}: {e}",
                identity=key,
                original_error=e,
            )


def create_state_store(backend: str, path: str) -> StateStore:
    """Create a state store for a configured backend name."""
    if backend == "memory":
        return InMemoryStateStore()
    if backend == "file":
        return FileStateStore(path)
    raise ValueError(f"Unknown state backend: {backend}. Available: ['file', 'memory']")
