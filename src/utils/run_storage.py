"""
Record stores for playbooks, runs and persisted results.

The pipeline treats persistence as an opaque collection/record API so the
service can run against memory (tests, CLI) or a directory of JSON files.
"""

import copy
import json
import os
import tempfile
import threading
import uuid
from typing import Any, Dict, List, Optional

from src.utils.models import utc_now_iso

PLAYBOOKS = "playbooks"
RUNS = "runs"
RESULTS = "results"
COLLECTIONS = (PLAYBOOKS, RUNS, RESULTS)


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection '{collection}'")


class RecordStore:
    """Collection of JSON-compatible records keyed by id."""

    def insert(self, collection: str, record: Dict[str, Any], record_id: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def update(self, collection: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def list(self, collection: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Newest first, by createdAt."""
        raise NotImplementedError

    def increment(self, collection: str, record_id: str, field: str, by: int = 1) -> Dict[str, Any]:
        raise NotImplementedError


def _new_record(record: Dict[str, Any], record_id: Optional[str]) -> Dict[str, Any]:
    now = utc_now_iso()
    out = copy.deepcopy(record)
    out["id"] = record_id or out.get("id") or uuid.uuid4().hex
    out.setdefault("createdAt", now)
    out["updatedAt"] = now
    return out


def _sorted_newest(records: List[Dict[str, Any]], limit: Optional[int]) -> List[Dict[str, Any]]:
    ordered = sorted(records, key=lambda r: r.get("createdAt") or "", reverse=True)
    return ordered[:limit] if limit else ordered


class InMemoryRecordStore(RecordStore):
    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {c: {} for c in COLLECTIONS}
        self._lock = threading.Lock()

    def insert(self, collection, record, record_id=None):
        _check_collection(collection)
        stored = _new_record(record, record_id)
        with self._lock:
            self._data[collection][stored["id"]] = stored
        return copy.deepcopy(stored)

    def get(self, collection, record_id):
        _check_collection(collection)
        with self._lock:
            found = self._data[collection].get(record_id)
        return copy.deepcopy(found) if found is not None else None

    def update(self, collection, record_id, changes):
        _check_collection(collection)
        with self._lock:
            current = self._data[collection].get(record_id)
            if current is None:
                raise KeyError(f"{collection} record '{record_id}' not found")
            current.update(copy.deepcopy(changes))
            current["updatedAt"] = utc_now_iso()
            return copy.deepcopy(current)

    def list(self, collection, limit=None):
        _check_collection(collection)
        with self._lock:
            records = [copy.deepcopy(r) for r in self._data[collection].values()]
        return _sorted_newest(records, limit)

    def increment(self, collection, record_id, field, by=1):
        _check_collection(collection)
        with self._lock:
            current = self._data[collection].get(record_id)
            if current is None:
                raise KeyError(f"{collection} record '{record_id}' not found")
            current[field] = int(current.get(field) or 0) + by
            current["updatedAt"] = utc_now_iso()
            return copy.deepcopy(current)


class JsonDirRecordStore(RecordStore):
    """One JSON file per record under <root>/<collection>/<id>.json."""

    def __init__(self, root_dir: str = "data/store"):
        self.root_dir = root_dir
        self._lock = threading.Lock()
        for collection in COLLECTIONS:
            _ensure_dir(os.path.join(root_dir, collection))

    def _path(self, collection: str, record_id: str) -> str:
        safe_id = os.path.basename(str(record_id))
        if not safe_id or safe_id != str(record_id):
            raise KeyError(f"Invalid record id '{record_id}'")
        return os.path.join(self.root_dir, collection, f"{safe_id}.json")

    def _read(self, path: str) -> Optional[Dict[str, Any]]:
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, path: str, record: Dict[str, Any]) -> None:
        directory = os.path.dirname(path)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2, ensure_ascii=False, default=str)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def insert(self, collection, record, record_id=None):
        _check_collection(collection)
        stored = _new_record(record, record_id)
        with self._lock:
            self._write(self._path(collection, stored["id"]), stored)
        return stored

    def get(self, collection, record_id):
        _check_collection(collection)
        try:
            path = self._path(collection, record_id)
        except KeyError:
            return None
        with self._lock:
            return self._read(path)

    def update(self, collection, record_id, changes):
        _check_collection(collection)
        path = self._path(collection, record_id)
        with self._lock:
            current = self._read(path)
            if current is None:
                raise KeyError(f"{collection} record '{record_id}' not found")
            current.update(copy.deepcopy(changes))
            current["updatedAt"] = utc_now_iso()
            self._write(path, current)
            return current

    def list(self, collection, limit=None):
        _check_collection(collection)
        directory = os.path.join(self.root_dir, collection)
        records = []
        with self._lock:
            for name in os.listdir(directory):
                if name.endswith(".json") and not name.startswith(".tmp_"):
                    record = self._read(os.path.join(directory, name))
                    if record is not None:
                        records.append(record)
        return _sorted_newest(records, limit)

    def increment(self, collection, record_id, field, by=1):
        _check_collection(collection)
        path = self._path(collection, record_id)
        with self._lock:
            current = self._read(path)
            if current is None:
                raise KeyError(f"{collection} record '{record_id}' not found")
            current[field] = int(current.get(field) or 0) + by
            current["updatedAt"] = utc_now_iso()
            self._write(path, current)
            return current
