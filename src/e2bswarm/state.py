"""
Persisted swarm state.

A single JSON document records every instance ever spawned. Reads are
best-effort: a missing or corrupt file yields a fresh state. Writes are
serialized with an fcntl lock and guarded by a version counter.
"""

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from e2bswarm.errors import StateConflictError
from e2bswarm.schemas import SwarmInstance, SwarmState, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path.home() / ".e2bswarm" / "state.json"
RETENTION = timedelta(hours=24)


class StateStore:
    """
    File-backed repository for SwarmState.

    Example:
        store = StateStore(paths.state)
        state = store.load()
        ...
        store.commit(state, touched_instances)
    """

    def __init__(self, path: Path | str = DEFAULT_STATE_PATH):
        self.path = Path(path)
        self._lock_path = self.path.with_name(self.path.name + ".lock")

    def load(self) -> SwarmState:
        """Load state, returning a fresh empty state if missing or unreadable."""
        return self._read() or SwarmState()

    def save(self, state: SwarmState) -> SwarmState:
        """
        Write state if nobody else has written since it was loaded.

        Raises:
            StateConflictError: If the on-disk version differs from state.version
        """
        with self._locked():
            current = self._read()
            disk_version = current.version if current else 0
            if disk_version != state.version:
                raise StateConflictError(
                    f"State changed on disk (version {disk_version}, loaded {state.version})"
                )
            self._write(state)
        return state

    def commit(self, state: SwarmState, instances: Iterable[SwarmInstance]) -> SwarmState:
        """
        Merge the given instances into the latest on-disk state and write it.

        Instances are upserted by ID, so concurrent commands that touch
        different instances do not overwrite each other. The in-memory state
        is refreshed to the merged document.
        """
        with self._locked():
            merged = self._read() or SwarmState(created_at=state.created_at)
            by_id = {i.id: idx for idx, i in enumerate(merged.instances)}
            for instance in instances:
                if instance.id in by_id:
                    merged.instances[by_id[instance.id]] = instance
                else:
                    by_id[instance.id] = len(merged.instances)
                    merged.instances.append(instance)
            self._write(merged)

        state.instances = merged.instances
        state.version = merged.version
        state.updated_at = merged.updated_at
        return state

    def replace(self, state: SwarmState) -> SwarmState:
        """Unconditionally write state (used by the cleanup path)."""
        with self._locked():
            current = self._read()
            state.version = current.version if current else state.version
            self._write(state)
        return state

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> SwarmState | None:
        try:
            content = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Failed to read state file {self.path}: {e}")
            return None

        try:
            return SwarmState.model_validate(json.loads(content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"Ignoring corrupt state file {self.path}: {e}")
            return None

    def _write(self, state: SwarmState) -> None:
        state.version += 1
        state.updated_at = utcnow()
        data = json.dumps(state.to_dict(), indent=2)

        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


def prune(state: SwarmState, max_age: timedelta = RETENTION) -> int:
    """
    Drop terminal instances older than max_age.

    Age is measured from completed_at, or started_at when the instance never
    completed (e.g. failed during spawn). Non-terminal instances are kept.

    Returns:
        Number of instances removed
    """
    cutoff = utcnow() - max_age
    before = len(state.instances)
    state.instances = [
        i
        for i in state.instances
        if not i.is_terminal or (i.completed_at or i.started_at) > cutoff
    ]
    return before - len(state.instances)


def load_state(path: Path | str = DEFAULT_STATE_PATH) -> SwarmState:
    return StateStore(path).load()


def save_state(state: SwarmState, path: Path | str = DEFAULT_STATE_PATH) -> SwarmState:
    """Merge every instance of state into the document at path."""
    return StateStore(path).commit(state, state.instances)
