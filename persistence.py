"""Durable storage of the training state document.

The whole state lives in one JSON file. Saves are written to a staging file in
the same directory and then moved over the document with ``os.replace`` so an
interrupted save never leaves a half-written document behind.
"""

from __future__ import annotations

import json
import os
import queue
import threading
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import ValidationError

from errors import CorruptionError, PersistenceError
from models import SCHEMA_VERSION, AppState

STAGING_SUFFIX = ".tmp"

_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {}


def register_migration(from_version: int):
    """Register a function upgrading a raw document from ``from_version``."""

    def decorator(func):
        _MIGRATIONS[from_version] = func
        return func

    return decorator


@register_migration(1)
def _migrate_v1(data: dict[str, Any]) -> dict[str, Any]:
    # v1 used camelCase top-level keys, stored sets under "exercises" with a
    # "style" field and keyed the set memory by exercise name.
    renames = {
        "exerciseLibrary": "exercises",
        "activeSession": "active_session",
        "bodyWeightEntries": "body_weights",
    }
    for old, new in renames.items():
        if old in data and new not in data:
            data[new] = data.pop(old)
    data.pop("lastSetMemory", None)
    data["last_performance"] = {}
    sessions = list(data.get("sessions") or [])
    if data.get("active_session"):
        sessions.append(data["active_session"])
    for session in sessions:
        if "exercises" in session and "entries" not in session:
            session["entries"] = session.pop("exercises")
        for entry in session.get("entries") or []:
            for logged in entry.get("sets") or []:
                if "style" in logged and "set_type" not in logged:
                    logged["set_type"] = logged.pop("style")
                logged.setdefault("exercise_id", entry.get("exercise_id"))
    return data


def migrate_document(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a raw document up to :data:`SCHEMA_VERSION`."""
    version = data.get("schema_version", 1)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise CorruptionError(f"invalid schema version: {version!r}")
    if version > SCHEMA_VERSION:
        raise CorruptionError(
            f"schema version {version} is newer than supported version {SCHEMA_VERSION}"
        )
    while version < SCHEMA_VERSION:
        migration = _MIGRATIONS.get(version)
        if migration is None:
            raise CorruptionError(f"no migration from schema version {version}")
        logger.info("Migrating state document from schema v{} to v{}", version, version + 1)
        try:
            data = migration(dict(data))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CorruptionError(
                f"malformed schema v{version} document: {exc}"
            ) from exc
        version += 1
        data["schema_version"] = version
    return data


class PersistenceGateway:
    """Atomic save and load of the state document at ``path``."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    @staticmethod
    def dumps(state: AppState) -> str:
        payload = state.model_dump(mode="json")
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    def save(self, state: AppState) -> None:
        self.write(self.dumps(state))

    def write(self, payload: str) -> None:
        """Stage ``payload`` next to the document, then swap it in."""
        staging: Optional[Path] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with NamedTemporaryFile(
                "w",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=STAGING_SUFFIX,
                delete=False,
                encoding="utf-8",
            ) as tmp:
                staging = Path(tmp.name)
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(staging, self.path)
        except OSError as exc:
            if staging is not None:
                try:
                    staging.unlink()
                except OSError:
                    logger.warning("Could not remove staging file {}", staging)
            raise PersistenceError(f"could not save {self.path}: {exc}") from exc
        logger.debug("Saved state document to {}", self.path)

    def staging_files(self) -> list[Path]:
        if not self.path.parent.exists():
            return []
        return sorted(self.path.parent.glob(f".{self.path.name}.*{STAGING_SUFFIX}"))

    def discard_staging(self) -> int:
        """Remove staging files left behind by an interrupted save."""
        removed = 0
        for stale in self.staging_files():
            logger.warning("Discarding unfinished save {}", stale)
            stale.unlink()
            removed += 1
        return removed

    def load(self) -> Optional[AppState]:
        """Return the stored state, or ``None`` when no document exists yet."""
        self.discard_staging()
        if not self.path.exists():
            logger.info("No state document at {}; starting fresh", self.path)
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CorruptionError(f"could not read {self.path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptionError(f"could not parse {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise CorruptionError(f"{self.path} must contain a JSON object")
        data = migrate_document(data)
        try:
            state = AppState.model_validate(data)
        except ValidationError as exc:
            raise CorruptionError(f"invalid state document {self.path}: {exc}") from exc
        logger.info(
            "Loaded state document {} ({} sessions)", self.path, len(state.sessions)
        )
        return state


class BackgroundSaver(threading.Thread):
    """Background thread writing state snapshots in submission order."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        on_error: Callable[[int, PersistenceError], None] | None = None,
        on_success: Callable[[int], None] | None = None,
    ) -> None:
        super().__init__(daemon=True, name="state-saver")
        self.gateway = gateway
        self.on_error = on_error
        self.on_success = on_success
        self._queue: queue.Queue = queue.Queue()

    def submit(self, seq: int, payload: str) -> None:
        self._queue.put((seq, payload))

    def run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                seq, payload = item
                try:
                    self.gateway.write(payload)
                except PersistenceError as exc:
                    logger.warning("Background save #{} failed: {}", seq, exc)
                    if self.on_error is not None:
                        self.on_error(seq, exc)
                else:
                    if self.on_success is not None:
                        self.on_success(seq)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every submitted snapshot has been written or failed."""
        self._queue.join()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._queue.put(None)
        self.join(timeout)
