"""Durable record storage shared by the recall collections.

Records are the source of truth for every collection: vector and text indexes
are derived state and can always be rebuilt from a :class:`RecordStore`.
Snapshots are plain JSON so they can be inspected and diffed by hand.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set

from .types import CollectionRecord

logger = logging.getLogger(__name__)

__all__ = ("RecordStore", "SNAPSHOT_VERSION", "load_snapshot", "save_snapshot")

SNAPSHOT_VERSION = 1


class RecordStore:
    """Thread-safe id -> record mapping with a secondary scope index.

    Identifiers are assigned monotonically and never reused, even after
    deletion, so stale references can never alias a newer record.

    Examples:
        >>> store = RecordStore("knowledge")
        >>> record = store.put(CollectionRecord(id=store.allocate_id(), scope="42", text="hello"))
        >>> store.ids_for_scope("42")
        [1]
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = RLock()
        self._records: Dict[int, CollectionRecord] = {}
        self._by_scope: Dict[str, Set[int]] = {}
        self._next_id = 1

    def allocate_id(self) -> int:
        """Reserve and return the next record id."""

        with self._lock:
            value = self._next_id
            self._next_id += 1
            return value

    def put(self, record: CollectionRecord) -> CollectionRecord:
        """Insert or replace ``record``; returns it for chaining."""

        with self._lock:
            previous = self._records.get(record.id)
            if previous is not None and previous.scope != record.scope:
                self._unlink_scope(previous)
            self._records[record.id] = record
            self._by_scope.setdefault(record.scope, set()).add(record.id)
            if record.id >= self._next_id:
                self._next_id = record.id + 1
        return record

    def get(self, record_id: int) -> Optional[CollectionRecord]:
        """Return the record for ``record_id`` when present."""

        return self._records.get(record_id)

    def delete(self, record_id: int) -> Optional[CollectionRecord]:
        """Remove and return the record for ``record_id`` when present."""

        with self._lock:
            record = self._records.pop(record_id, None)
            if record is not None:
                self._unlink_scope(record)
            return record

    def delete_scope(self, scope: str) -> List[CollectionRecord]:
        """Remove every record under ``scope`` and return them."""

        with self._lock:
            ids = self._by_scope.pop(scope, set())
            return [self._records.pop(record_id) for record_id in sorted(ids) if record_id in self._records]

    def ids_for_scope(self, scope: str) -> List[int]:
        """Return record ids under ``scope`` in ascending order."""

        with self._lock:
            return sorted(self._by_scope.get(scope, ()))

    def scopes(self) -> List[str]:
        """Return every scope with at least one record."""

        with self._lock:
            return sorted(self._by_scope)

    def all(self) -> List[CollectionRecord]:
        """Return all records ordered by id."""

        with self._lock:
            return [self._records[key] for key in sorted(self._records)]

    def iter_all(self) -> Iterator[CollectionRecord]:
        """Yield records ordered by id from a point-in-time copy."""

        return iter(self.all())

    def count(self) -> int:
        """Return the number of stored records."""

        return len(self._records)

    def clear(self) -> None:
        """Drop every record but keep the id counter."""

        with self._lock:
            self._records.clear()
            self._by_scope.clear()

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON-safe payload describing the store."""

        with self._lock:
            return {
                "name": self.name,
                "next_id": self._next_id,
                "records": [record.to_dict() for record in self.all()],
            }

    def restore(self, payload: Mapping[str, Any]) -> None:
        """Replace the store contents with a payload from :meth:`snapshot`.

        Raises:
            ValueError: If the payload is malformed.
        """
        try:
            records = [CollectionRecord.from_dict(item) for item in payload.get("records", [])]
            next_id = int(payload.get("next_id", 1))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid snapshot for record store '{self.name}': {exc}") from exc
        with self._lock:
            self._records.clear()
            self._by_scope.clear()
            self._next_id = 1
            for record in records:
                self.put(record)
            self._next_id = max(self._next_id, next_id)

    def _unlink_scope(self, record: CollectionRecord) -> None:
        members = self._by_scope.get(record.scope)
        if members is None:
            return
        members.discard(record.id)
        if not members:
            del self._by_scope[record.scope]


def save_snapshot(path: Path, collections: Mapping[str, Mapping[str, Any]]) -> Path:
    """Atomically write collection payloads to ``path`` as JSON.

    Args:
        path: Destination file.
        collections: JSON-safe payloads (e.g. :meth:`RecordStore.snapshot`)
            keyed by collection name.

    Returns:
        The resolved destination path.
    """
    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": SNAPSHOT_VERSION,
        "collections": {name: dict(body) for name, body in collections.items()},
    }
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=str(destination.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, sort_keys=True)
        os.replace(tmp_name, destination)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info(
        "recall-snapshot-saved",
        extra={"event": {"path": str(destination), "collections": sorted(collections)}},
    )
    return destination


def load_snapshot(path: Path) -> Dict[str, Mapping[str, Any]]:
    """Read a snapshot written by :func:`save_snapshot`.

    Returns:
        Per-collection payloads keyed by collection name.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the file is not a supported snapshot.
    """
    source = Path(path)
    if not source.exists():
        raise FileNotFoundError(f"Snapshot file {source} not found")
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Snapshot file {source} is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping) or payload.get("version") != SNAPSHOT_VERSION:
        raise ValueError(f"Snapshot file {source} has an unsupported layout")
    collections = payload.get("collections")
    if not isinstance(collections, Mapping):
        raise ValueError(f"Snapshot file {source} is missing collections")
    return {str(name): dict(body) for name, body in collections.items()}
