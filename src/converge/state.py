"""Versioned state store with per-record compare-and-swap.

The state store maps logical ids to StateRecords describing the real-world
resource last applied for each declared node. It is the only shared mutable
resource in a pass, so every write is conditional:

- put(record, expected_version) succeeds only if the stored version equals
  expected_version (None meaning "no record yet")
- delete(logical_id, expected_version) follows the same rule
- a mismatch raises StaleStateError; the caller re-reads and retries

Versions come from a store-wide sequence, so a record that is deleted and
recreated never reuses a version a stale caller may still hold.

FileStateStore serialises writers across threads and processes with an
exclusive fcntl lock on a sidecar file and replaces the state file
atomically.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StaleStateError(Exception):
    """Raised when a conditional write loses a compare-and-swap race."""

    def __init__(self, logical_id: str, expected: int | None, actual: int | None) -> None:
        super().__init__(
            f"Stale state for '{logical_id}': expected version {expected}, found {actual}"
        )
        self.logical_id = logical_id
        self.expected = expected
        self.actual = actual


class StateStoreError(Exception):
    """Raised when the persisted state cannot be read or written."""

    pass


class StateRecord(BaseModel):
    """Last known real-world state of one logical resource."""

    model_config = {"frozen": True}

    logical_id: str
    kind: str
    handle: str

    # Resolved attributes last sent to the provider
    applied: dict[str, Any] = Field(default_factory=dict)

    # Attributes last read back from the provider (apply or refresh)
    observed: dict[str, Any] = Field(default_factory=dict)

    # Attributes returned by the last apply; references resolve against these
    outputs: dict[str, Any] = Field(default_factory=dict)

    # Dependency ids at the time of the last apply, used to order deletes
    dependencies: list[str] = Field(default_factory=list)

    # Cleared by refresh when the remote resource no longer exists
    exists: bool = True

    reconciled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = 0


class StateStore(ABC):
    """Contract every state store implements."""

    @abstractmethod
    def get(self, logical_id: str) -> StateRecord | None:
        """Return the record for logical_id, or None."""

    @abstractmethod
    def put(self, record: StateRecord, expected_version: int | None) -> StateRecord:
        """Write record if the stored version equals expected_version.

        Returns:
            The stored record carrying its new version.

        Raises:
            StaleStateError: If the stored version differs.
        """

    @abstractmethod
    def delete(self, logical_id: str, expected_version: int | None) -> None:
        """Delete the record if the stored version equals expected_version.

        Raises:
            StaleStateError: If the stored version differs.
        """

    @abstractmethod
    def list_all(self) -> list[StateRecord]:
        """Return every record ordered by logical id."""


def _check_version(
    logical_id: str, current: StateRecord | None, expected_version: int | None
) -> None:
    actual = current.version if current is not None else None
    if actual != expected_version:
        raise StaleStateError(logical_id, expected_version, actual)


class MemoryStateStore(StateStore):
    """In-process store. Thread-safe; not durable."""

    def __init__(self, records: list[StateRecord] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, StateRecord] = {}
        self._sequence = 0
        for record in records or []:
            self._sequence = max(self._sequence, record.version)
            self._records[record.logical_id] = record

    def get(self, logical_id: str) -> StateRecord | None:
        with self._lock:
            return self._records.get(logical_id)

    def put(self, record: StateRecord, expected_version: int | None) -> StateRecord:
        with self._lock:
            _check_version(record.logical_id, self._records.get(record.logical_id), expected_version)
            self._sequence += 1
            stored = record.model_copy(update={"version": self._sequence})
            self._records[record.logical_id] = stored
            return stored

    def delete(self, logical_id: str, expected_version: int | None) -> None:
        with self._lock:
            _check_version(logical_id, self._records.get(logical_id), expected_version)
            del self._records[logical_id]

    def list_all(self) -> list[StateRecord]:
        with self._lock:
            return [self._records[key] for key in sorted(self._records)]


class FileStateStore(StateStore):
    """Durable JSON store safe for concurrent processes on one host.

    File format:
        {"format_version": 1, "sequence": <int>, "records": {<id>: {...}}}
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock_path = path.with_name(path.name + ".lock")
        self._thread_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the thread lock and an exclusive lock on the sidecar file."""
        with self._thread_lock:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _read(self) -> tuple[int, dict[str, StateRecord]]:
        if not self._path.exists():
            return 0, {}

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e

        if not isinstance(data, dict) or data.get("format_version") != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state file format in {self._path}, "
                f"expected format_version {STATE_FORMAT_VERSION}"
            )

        try:
            records = {
                logical_id: StateRecord.model_validate(raw)
                for logical_id, raw in data.get("records", {}).items()
            }
        except ValidationError as e:
            raise StateStoreError(f"Corrupt record in state file {self._path}: {e}") from e

        return int(data.get("sequence", 0)), records

    def _write(self, sequence: int, records: dict[str, StateRecord]) -> None:
        payload = {
            "format_version": STATE_FORMAT_VERSION,
            "sequence": sequence,
            "records": {
                key: records[key].model_dump(mode="json") for key in sorted(records)
            },
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

    def get(self, logical_id: str) -> StateRecord | None:
        with self._locked():
            _, records = self._read()
        return records.get(logical_id)

    def put(self, record: StateRecord, expected_version: int | None) -> StateRecord:
        with self._locked():
            sequence, records = self._read()
            _check_version(record.logical_id, records.get(record.logical_id), expected_version)
            sequence += 1
            stored = record.model_copy(update={"version": sequence})
            records[record.logical_id] = stored
            self._write(sequence, records)

        logger.debug(
            "State record written",
            extra={"logical_id": record.logical_id, "version": stored.version},
        )
        return stored

    def delete(self, logical_id: str, expected_version: int | None) -> None:
        with self._locked():
            sequence, records = self._read()
            _check_version(logical_id, records.get(logical_id), expected_version)
            del records[logical_id]
            self._write(sequence, records)

        logger.debug("State record deleted", extra={"logical_id": logical_id})

    def list_all(self) -> list[StateRecord]:
        with self._locked():
            _, records = self._read()
        return [records[key] for key in sorted(records)]
