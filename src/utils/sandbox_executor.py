"""
Sandbox executor: runs one transformation unit in an isolated child process.

The parent writes an input handoff (rows, parameters, policy), starts exactly
one child, waits for it under a wall-clock budget, reads the output handoff
once, and removes both handoff files on every exit path.
"""

import json
import os
import shutil
import signal
import subprocess
import tempfile
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from src.utils.models import (
    CANCELED,
    CONTRACT_VIOLATION,
    ENTRY_FUNCTION,
    IO_ERROR,
    RUNTIME_ERROR,
    SPAWN_ERROR,
    TIMEOUT,
    ExecutionResult,
    TransformationUnit,
)
from src.utils.run_context import RunContext
from src.utils.sandbox_policy import ExecutionLimits

CHILD_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "sandbox_child.py")
POLL_INTERVAL_S = 0.05
MAX_ERROR_CHARS = 1000

_KNOWN_KINDS = {RUNTIME_ERROR, CONTRACT_VIOLATION, IO_ERROR}


def _json_default(o):
    import numpy as _np
    if isinstance(o, _np.generic):
        return o.item()
    if isinstance(o, (pd.Timestamp,)):
        return o.isoformat()
    if hasattr(pd, "Timedelta") and isinstance(o, pd.Timedelta):
        return o.total_seconds()
    if isinstance(o, (set, tuple)):
        return list(o)
    if hasattr(o, "isoformat"):
        return o.isoformat()
    try:
        if pd.isna(o):
            return None
    except (TypeError, ValueError):
        pass
    return str(o)


def _truncate_text(text: str, max_len: int = MAX_ERROR_CHARS) -> str:
    if not text or len(text) <= max_len:
        return text
    return text[: max_len - 16] + "...[TRUNCATED]"


def _stderr_summary(stderr: str) -> str:
    """Last meaningful line of child stderr (the exception line of a traceback)."""
    lines = [line.strip() for line in (stderr or "").splitlines() if line.strip()]
    if not lines:
        return ""
    return _truncate_text(lines[-1])


def _rows_and_columns(input_rows: Any) -> Tuple[List[Dict[str, Any]], Optional[List[str]]]:
    if isinstance(input_rows, pd.DataFrame):
        columns = [str(c) for c in input_rows.columns]
        frame = input_rows.copy()
        frame.columns = columns
        return frame.to_dict("records"), columns
    rows = [dict(r) for r in (input_rows or [])]
    columns: List[str] = []
    for row in rows:
        for key in row.keys():
            if key not in columns:
                columns.append(key)
    return rows, (columns or None)


def _remove_quietly(path: Optional[str]) -> None:
    if not path:
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        print(f"SANDBOX_CLEANUP_WARNING path={path} error={e}")


class IsolationBackend:
    """
    Isolation mechanism used by the executor. Backends receive a fully bound
    request and must return an ExecutionResult, never raise.
    """

    name = "base"

    def run(
        self,
        source: str,
        parameters: Dict[str, Any],
        input_rows: Any,
        limits: ExecutionLimits,
        context: Optional[RunContext] = None,
    ) -> ExecutionResult:
        raise NotImplementedError


class SubprocessIsolation(IsolationBackend):
    """One short-lived OS process per request, driven through two JSON handoff files."""

    name = "subprocess"

    def __init__(self, handoff_dir: Optional[str] = None, child_script: str = CHILD_SCRIPT):
        self.handoff_dir = handoff_dir
        self.child_script = child_script

    def run(
        self,
        source: str,
        parameters: Dict[str, Any],
        input_rows: Any,
        limits: ExecutionLimits,
        context: Optional[RunContext] = None,
    ) -> ExecutionResult:
        started = time.monotonic()
        handoff_dir = self.handoff_dir or tempfile.gettempdir()
        token = uuid.uuid4().hex
        input_path: Optional[str] = None
        output_path = os.path.join(handoff_dir, f"transform_output_{token}.json")

        def _elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            try:
                rows, columns = _rows_and_columns(input_rows)
                payload = {
                    "code": source,
                    "entry": ENTRY_FUNCTION,
                    "rows": rows,
                    "columns": columns,
                    "parameters": parameters or {},
                    "policy": limits.policy.to_payload(),
                    "preview_rows": limits.preview_rows,
                }
                fd, input_path = tempfile.mkstemp(prefix=f"transform_input_{token}_", suffix=".json", dir=handoff_dir)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, default=_json_default)
            except (OSError, TypeError, ValueError) as e:
                return ExecutionResult.failure(IO_ERROR, f"Could not write input handoff: {e}", _elapsed_ms())

            if context is not None and context.is_canceled:
                return ExecutionResult.failure(CANCELED, "Run canceled before execution started", _elapsed_ms())

            try:
                proc = subprocess.Popen(
                    [limits.python_executable, self.child_script, input_path, output_path],
                    cwd=handoff_dir,
                    env=limits.child_env(),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    encoding="utf-8",
                    errors="replace",
                    start_new_session=(os.name == "posix"),
                )
            except (OSError, ValueError) as e:
                print(f"SANDBOX_SPAWN_ERROR: {e}")
                return ExecutionResult.failure(SPAWN_ERROR, f"Could not start sandbox process: {e}", _elapsed_ms())

            timeout_s = context.bound_timeout(limits.timeout_s) if context is not None else limits.timeout_s
            outcome, stderr = self._wait(proc, started + timeout_s, limits, context)
            if outcome == TIMEOUT:
                print(f"SANDBOX_TIMEOUT after {timeout_s:.1f}s")
                return ExecutionResult.failure(
                    TIMEOUT, f"Transformation exceeded the {timeout_s:g}s time limit", _elapsed_ms()
                )
            if outcome == CANCELED:
                reason = (context.cancel_reason if context is not None else None) or "canceled by caller"
                return ExecutionResult.failure(CANCELED, f"Execution canceled: {reason}", _elapsed_ms())

            return self._read_result(output_path, proc.returncode, stderr, limits, _elapsed_ms)
        finally:
            _remove_quietly(input_path)
            _remove_quietly(output_path)

    def _wait(
        self,
        proc: subprocess.Popen,
        deadline: float,
        limits: ExecutionLimits,
        context: Optional[RunContext],
    ) -> Tuple[str, str]:
        while True:
            try:
                _, stderr = proc.communicate(timeout=POLL_INTERVAL_S)
                return "exited", stderr or ""
            except subprocess.TimeoutExpired:
                pass
            if context is not None and context.is_canceled:
                self._kill(proc, limits)
                return CANCELED, ""
            if time.monotonic() >= deadline:
                self._kill(proc, limits)
                return TIMEOUT, ""

    def _kill(self, proc: subprocess.Popen, limits: ExecutionLimits) -> None:
        # Kill the whole session so grandchildren cannot outlive the run.
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass
        try:
            proc.communicate(timeout=limits.kill_grace_s)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def _read_result(self, output_path, returncode, stderr, limits, elapsed_ms) -> ExecutionResult:
        if not os.path.exists(output_path):
            if returncode != 0:
                detail = _stderr_summary(stderr) or f"Sandbox process exited with code {returncode}"
                return ExecutionResult.failure(RUNTIME_ERROR, detail, elapsed_ms())
            return ExecutionResult.failure(IO_ERROR, "Sandbox produced no result handoff", elapsed_ms())

        try:
            with open(output_path, "r", encoding="utf-8") as f:
                record = json.load(f)
        except OSError as e:
            return ExecutionResult.failure(IO_ERROR, f"Could not read result handoff: {e}", elapsed_ms())
        except ValueError as e:
            kind = CONTRACT_VIOLATION if returncode == 0 else RUNTIME_ERROR
            return ExecutionResult.failure(kind, f"Malformed result handoff: {e}", elapsed_ms())

        if not isinstance(record, dict):
            return ExecutionResult.failure(CONTRACT_VIOLATION, "Result handoff is not an object", elapsed_ms())

        if not record.get("success"):
            kind = record.get("kind") if record.get("kind") in _KNOWN_KINDS else RUNTIME_ERROR
            message = _truncate_text(str(record.get("error") or "Transformation failed"))
            return ExecutionResult.failure(kind, message, elapsed_ms())

        rows = record.get("data")
        columns = record.get("columns") or []
        summary = record.get("summary") or {}
        original = summary.get("originalRowCount")
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows) or not isinstance(original, int):
            return ExecutionResult.failure(CONTRACT_VIOLATION, "Result handoff is missing rows or counts", elapsed_ms())

        return ExecutionResult.from_rows(
            rows,
            [str(c) for c in columns],
            original_row_count=original,
            execution_time_ms=elapsed_ms(),
            preview_rows=limits.preview_rows,
        )


class SandboxExecutor:
    def __init__(self, limits: Optional[ExecutionLimits] = None, backend: Optional[IsolationBackend] = None):
        self.limits = limits or ExecutionLimits.from_env()
        self.backend = backend or SubprocessIsolation()

    def execute(
        self,
        unit: TransformationUnit,
        bound_parameters: Dict[str, Any],
        input_rows: Sequence[Dict[str, Any]] | pd.DataFrame,
        limits: Optional[ExecutionLimits] = None,
        context: Optional[RunContext] = None,
        source: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Runs unit against input_rows. `source` overrides unit.source when the
        binder has substituted literals into the code.
        """
        return self.backend.run(
            source if source is not None else unit.source,
            dict(bound_parameters or {}),
            input_rows,
            limits or self.limits,
            context,
        )
