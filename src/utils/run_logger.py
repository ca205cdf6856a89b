import json
import os
import threading
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from src.utils.models import utc_now_iso

load_dotenv()

DEFAULT_LOG_DIR = os.getenv("RUN_LOG_DIR", "logs")

# Concurrent runs write to different files; the lock only guards appends
# issued from several threads for the same run id.
_WRITE_LOCK = threading.Lock()


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _log_path(run_id: str, log_dir: Optional[str] = None) -> str:
    return os.path.join(log_dir or DEFAULT_LOG_DIR, f"run_{run_id}.jsonl")


def _append(path: str, record: Dict[str, Any]) -> None:
    line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
    with _WRITE_LOCK:
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)


def init_run_log(run_id: str, metadata: Dict[str, Any], log_dir: Optional[str] = None) -> str:
    directory = log_dir or DEFAULT_LOG_DIR
    _ensure_dir(directory)
    path = _log_path(run_id, directory)
    _append(path, {
        "event": "run_start",
        "run_id": run_id,
        "timestamp": utc_now_iso(),
        "metadata": metadata,
    })
    return path


def log_run_event(run_id: str, event: str, payload: Dict[str, Any] | None = None, log_dir: Optional[str] = None) -> None:
    """Best effort: a failing log write never affects the run."""
    record = {
        "event": event,
        "run_id": run_id,
        "timestamp": utc_now_iso(),
        "payload": payload or {},
    }
    try:
        directory = log_dir or DEFAULT_LOG_DIR
        _ensure_dir(directory)
        _append(_log_path(run_id, directory), record)
    except (OSError, TypeError, ValueError) as e:
        print(f"RUN_LOG_WARNING run_id={run_id} event={event} error={e}")


def finalize_run_log(run_id: str, summary: Dict[str, Any], log_dir: Optional[str] = None) -> None:
    log_run_event(run_id, "run_end", summary, log_dir=log_dir)


def read_run_log(run_id: str, log_dir: Optional[str] = None) -> list:
    path = _log_path(run_id, log_dir)
    if not os.path.exists(path):
        return []
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events
