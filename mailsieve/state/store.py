"""Durable watermark store shared by all account workers.

State lives in one JSON file holding a list of ``SyncState`` records. The
file is read once at load time; afterwards every ``put`` updates the
in-memory map and rewrites the whole file atomically (temp file in the same
directory, fsync, rename), all under a single lock.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from pydantic import ValidationError

from mailsieve.schemas.sync import SyncState, state_key

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """The state file cannot be read or written."""


class SyncStateStore:
    """Thread-safe keyed map of ``"<account>:<folder>"`` to ``SyncState``.

    Usage::

        store = SyncStateStore.load("data/state.json")
        state = store.get_or_create("work", "INBOX")
        store.put(state.advanced(42))
    """

    def __init__(self, path: str | Path, states: list[SyncState] | None = None) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._states: dict[str, SyncState] = {s.key: s for s in states or []}

    @classmethod
    def load(cls, path: str | Path) -> "SyncStateStore":
        """Load the store from ``path``; a missing file gives an empty store.

        Raises:
            StateStoreError: The file exists but is not a valid state file.
        """
        path = Path(path)
        if not path.exists():
            logger.info("State file not found at %s, starting empty", path)
            return cls(path)

        try:
            raw = json.loads(path.read_text(encoding="utf-8") or "[]")
            if not isinstance(raw, list):
                raise StateStoreError(f"State file {path} must contain a JSON list")
            states = [SyncState.model_validate(item) for item in raw]
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise StateStoreError(f"Corrupted state file {path}: {exc}") from exc

        logger.info("Loaded %d sync state(s) from %s", len(states), path)
        return cls(path, states)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, account: str, folder: str) -> SyncState | None:
        with self._lock:
            return self._states.get(state_key(account, folder))

    def get_or_create(self, account: str, folder: str) -> SyncState:
        """Return the stored state, or a fresh unsaved one with unknown epoch."""
        with self._lock:
            state = self._states.get(state_key(account, folder))
        return state if state is not None else SyncState(account=account, folder=folder)

    def put(self, state: SyncState) -> None:
        """Store ``state`` and persist the whole map before returning.

        Raises:
            StateStoreError: The file could not be written. The in-memory
                value is kept so later reads in this process still see it.
        """
        with self._lock:
            self._states[state.key] = state
            self._save()

    def all(self) -> list[SyncState]:
        with self._lock:
            return sorted(self._states.values(), key=lambda s: s.key)

    def _save(self) -> None:
        """Atomic write: temp file + fsync + rename. Caller holds the lock."""
        data = [s.model_dump(mode="json") for s in sorted(self._states.values(), key=lambda s: s.key)]
        content = json.dumps(data, indent=2) + "\n"

        tmp_path = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), prefix=".state-", suffix=".tmp")
            with os.fdopen(fd, "wb") as fh:
                fh.write(content.encode("utf-8"))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            logger.error("Failed to write state file %s: %s", self._path, exc)
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StateStoreError(f"Cannot write state file {self._path}: {exc}") from exc
