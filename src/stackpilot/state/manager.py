"""State store for loading, saving, and managing resource state."""

import fcntl
import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from stackpilot.utils.errors import ErrorContext, StateStoreError
from stackpilot.utils.logging import get_logger

from .models import PendingOperation, StateDocument, StateRecord, utcnow

logger = get_logger(__name__)


class StateLockError(StateStoreError):
    """Exception raised when state file cannot be locked."""

    pass


class StateStore:
    """Persists StateRecords with atomic, per-identifier serialized writes.

    Readers see an immutable published document; each mutation builds a new
    document, writes it to a temporary file, fsyncs it and renames it over
    the state file before publishing it. A failed write leaves both the file
    and the in-memory view unchanged.
    """

    def __init__(self, state_path: Optional[str] = None):
        """
        Initialize StateStore.

        Args:
            state_path: Path to the JSON state file; state is kept in memory
                only when None
        """
        self.state_path = Path(state_path) if state_path else None
        self._document = StateDocument()
        self._write_lock = threading.Lock()
        self._id_locks: Dict[str, threading.Lock] = {}
        self._id_locks_guard = threading.Lock()
        self._lock_file: Optional[int] = None

    def load(self) -> "StateStore":
        """
        Load state from file. A missing file means empty state.

        Returns:
            Self for method chaining

        Raises:
            StateStoreError: If state file is corrupted or unreadable
        """
        if self.state_path is None or not self.state_path.exists():
            self._document = StateDocument()
            return self

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
            self._document = StateDocument.from_dict(data)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Failed to parse state file {self.state_path}: {e}", cause=e) from e
        except PydanticValidationError as e:
            raise StateStoreError(f"State file {self.state_path} is invalid: {e}", cause=e) from e
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self.state_path}: {e}", cause=e) from e

        logger.debug(
            f"Loaded {len(self._document.records)} state records (serial {self._document.serial})"
        )
        return self

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path is not None and self.state_path.exists()

    @property
    def serial(self) -> int:
        return self._document.serial

    def get(self, identifier: str) -> Optional[StateRecord]:
        """Get a copy of the record for a resource, or None."""
        record = self._document.records.get(identifier)
        return record.model_copy(deep=True) if record else None

    def snapshot(self) -> Dict[str, StateRecord]:
        """Copy of every record keyed by identifier, for diffing."""
        return {
            identifier: record.model_copy(deep=True)
            for identifier, record in self._document.records.items()
        }

    def put(self, record: StateRecord) -> None:
        """Atomically replace the record for ``record.identifier``.

        The record carries its own identifier, so there is no separate key
        argument that could disagree with it. Also clears any pending
        operation journaled for that identifier.

        Raises:
            StateStoreError: If the state cannot be written
        """
        record = record.model_copy(deep=True)

        def mutate(document: StateDocument) -> None:
            document.records[record.identifier] = record
            document.pending.pop(record.identifier, None)

        self._mutate(record.identifier, "put", mutate)

    def delete(self, identifier: str) -> None:
        """Remove the record (and any pending operation) for a resource.

        Raises:
            StateStoreError: If the state cannot be written
        """
        def mutate(document: StateDocument) -> None:
            document.records.pop(identifier, None)
            document.pending.pop(identifier, None)

        self._mutate(identifier, "delete", mutate)

    def begin_operation(self, operation: PendingOperation) -> None:
        """Journal a provider call before it is made."""
        operation = operation.model_copy(deep=True)

        def mutate(document: StateDocument) -> None:
            document.pending[operation.identifier] = operation

        self._mutate(operation.identifier, "begin_operation", mutate)

    def clear_operation(self, identifier: str) -> None:
        """Drop the journal entry for a resource, keeping its record."""
        if identifier not in self._document.pending:
            return

        def mutate(document: StateDocument) -> None:
            document.pending.pop(identifier, None)

        self._mutate(identifier, "clear_operation", mutate)

    def pending_operations(self) -> Dict[str, PendingOperation]:
        """Copy of journaled provider calls whose outcome was never recorded."""
        return {
            identifier: operation.model_copy(deep=True)
            for identifier, operation in self._document.pending.items()
        }

    @contextmanager
    def _identifier_lock(self, identifier: str) -> Iterator[None]:
        with self._id_locks_guard:
            lock = self._id_locks.setdefault(identifier, threading.Lock())
        with lock:
            yield

    def _mutate(
        self,
        identifier: str,
        operation: str,
        mutate: Callable[[StateDocument], None]
    ) -> None:
        with self._identifier_lock(identifier):
            with self._write_lock:
                current = self._document
                document = current.model_copy(
                    update={
                        "records": dict(current.records),
                        "pending": dict(current.pending),
                        "serial": current.serial + 1,
                        "updated_at": utcnow(),
                    }
                )
                mutate(document)
                try:
                    self._write(document)
                except OSError as e:
                    raise StateStoreError(
                        f"Failed to write state for {identifier}: {e}",
                        context=ErrorContext(resource_id=identifier, operation=operation),
                        cause=e,
                    ) from e
                self._document = document

    def _write(self, document: StateDocument) -> None:
        if self.state_path is None:
            return

        self.state_path.parent.mkdir(parents=True, exist_ok=True)

        # Write to temporary file in the same directory, then atomic rename
        fd, temp_name = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=f".{self.state_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_name, self.state_path)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

    def lock(self, timeout: float = 30) -> None:
        """
        Acquire exclusive lock on the state file across processes.

        Args:
            timeout: Lock timeout in seconds

        Raises:
            StateLockError: If lock cannot be acquired
        """
        if self.state_path is None:
            return

        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._lock_file = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)

            start_time = time.time()
            while True:
                try:
                    fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.time() - start_time > timeout:
                        raise StateLockError(
                            f"Failed to acquire lock on state file after {timeout}s",
                            suggestions=[f"Check for another run holding {lock_path}"]
                        )
                    time.sleep(0.1)
        except StateLockError:
            self._close_lock_file()
            raise
        except OSError as e:
            self._close_lock_file()
            raise StateLockError(f"Failed to acquire lock: {e}", cause=e) from e

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
            finally:
                self._close_lock_file()

    def _close_lock_file(self) -> None:
        if self._lock_file is not None:
            os.close(self._lock_file)
            self._lock_file = None

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        try:
            self.load()
        except BaseException:
            self.unlock()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()
