"""
Sandbox child entry point.

Run as a standalone script by the sandbox executor:

    python sandbox_child.py <input_handoff.json> <output_handoff.json>

Reads the input handoff once, runs the transformation's entry function inside
a namespace whose builtins and imports are restricted by the policy carried in
the handoff, and always writes exactly one output record. Before the transformation runs, an
audit hook is installed that refuses process, network and filesystem events
for the rest of the child's life. Must not import anything from the application package.
"""

import builtins
import inspect
import json
import os
import sys
import time
import warnings

from static_safety_scan import scan_code_safety

# Generated code must not see the application's source directory.
if sys.path and sys.path[0]:
    sys.path.pop(0)

EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_HANDOFF_ERROR = 3


def _json_default(o):
    import numpy as _np
    import pandas as _pd
    if isinstance(o, _np.generic):
        return o.item()
    if isinstance(o, (_pd.Timestamp,)):
        return o.isoformat()
    if hasattr(_pd, "Timedelta") and isinstance(o, _pd.Timedelta):
        return o.total_seconds()
    if isinstance(o, (set, tuple)):
        return list(o)
    if hasattr(o, "isoformat"):
        return o.isoformat()
    return str(o)


def _describe(exc: BaseException) -> str:
    message = str(exc).strip()
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


# Audit events refused once the transformation is about to run.
_DENIED_EVENTS = frozenset({
    "os.system", "os.exec", "os.spawn", "os.posix_spawn", "os.fork", "os.forkpty",
    "os.kill", "os.killpg", "os.startfile", "subprocess.Popen", "pty.spawn",
    "os.remove", "os.rename", "os.rmdir", "os.mkdir", "os.chmod", "os.chown",
    "os.link", "os.symlink", "os.truncate", "os.utime", "shutil.rmtree",
    "ctypes.dlopen", "ctypes.dlsym", "ctypes.dlsym/handle", "ctypes.call_function",
    "ctypes.cdata", "ctypes.string_at", "ctypes.wstring_at",
})
_DENIED_EVENT_PREFIXES = ("socket.", "urllib.", "http.", "ftplib.", "smtplib.", "webbrowser.")
_PATH_EVENTS = frozenset({"open", "os.listdir", "os.scandir"})
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_TRUNC | os.O_APPEND


def _readable_roots() -> tuple:
    """Interpreter and library directories; lazy imports still need to read them."""
    import zoneinfo

    candidates = [sys.prefix, sys.exec_prefix, sys.base_prefix, sys.base_exec_prefix]
    candidates.extend(p for p in sys.path if p)
    candidates.extend(zoneinfo.TZPATH)
    roots = []
    for path in candidates:
        real = os.path.realpath(path)
        if os.path.isdir(real):
            roots.append(real.rstrip(os.sep) + os.sep)
    return tuple(dict.fromkeys(roots))


def _install_runtime_guard(output_path: str) -> None:
    """
    Refuses process, network, native-library and filesystem events for the
    rest of the child's life. Reads are allowed under the interpreter's
    library roots; the only writable path is the output handoff.
    """
    roots = _readable_roots()
    output_real = os.path.realpath(output_path)

    def _deny(event):
        raise PermissionError(f"Blocked by sandbox policy: {event}")

    def hook(event, args):
        if event in _DENIED_EVENTS or event.startswith(_DENIED_EVENT_PREFIXES):
            _deny(event)
        if event not in _PATH_EVENTS:
            return
        path = args[0] if args else None
        if isinstance(path, int):
            return
        if path is None:
            path = os.getcwd()
        real = os.path.realpath(os.fsdecode(path))
        if event == "open":
            mode, flags = (args[1], args[2]) if len(args) >= 3 else (None, 0)
            writing = (isinstance(mode, str) and any(c in mode for c in "wax+")) or (
                isinstance(flags, int) and bool(flags & _WRITE_FLAGS)
            )
            if real == output_real:
                return
            if writing:
                _deny(f"open for writing {real}")
        if not (real + os.sep).startswith(roots):
            _deny(f"{event} {real}")

    sys.dont_write_bytecode = True
    sys.addaudithook(hook)


def _gated_builtins(policy: dict) -> dict:
    """
    Builtins for the transformation namespace only. The interpreter's own
    builtins module is left untouched, so pandas/numpy internals keep importing
    whatever they need.
    """
    denied_modules = frozenset(policy.get("denied_modules") or [])
    denied_builtins = frozenset(policy.get("denied_builtins") or [])
    real_import = builtins.__import__

    def gated_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level:
            raise ImportError("Relative imports are not allowed in transformations")
        if name.split(".")[0] in denied_modules:
            raise ImportError(f"Module '{name}' is not allowed")
        for item in fromlist or ():
            if item in denied_modules:
                raise ImportError(f"Module '{item}' is not allowed")
        return real_import(name, globals, locals, fromlist, level)

    table = {k: v for k, v in vars(builtins).items() if k not in denied_builtins}
    table["__import__"] = gated_import
    return table


def _result_records(frame):
    import pandas as pd

    columns = [str(c) for c in frame.columns]
    cleaned = frame.astype(object).where(pd.notna(frame), None)
    rows = [dict(zip(columns, values)) for values in cleaned.itertuples(index=False, name=None)]
    return columns, rows


def _run(payload: dict, output_path: str) -> tuple:
    """Returns (record, exit_code)."""
    import numpy as np
    import pandas as pd
    from datetime import datetime, timedelta

    warnings.filterwarnings("ignore")

    code = payload.get("code") or ""
    entry_name = payload.get("entry") or "transform_data"
    policy = payload.get("policy") or {}
    parameters = payload.get("parameters") or {}
    preview_rows = int(payload.get("preview_rows") or 10)

    df = pd.DataFrame(payload.get("rows") or [], columns=payload.get("columns") or None)
    original_row_count = len(df)

    if policy.get("static_scan", True):
        is_safe, violations = scan_code_safety(
            code,
            blocked_modules=policy.get("denied_modules"),
            blocked_calls=policy.get("denied_calls"),
        )
        if not is_safe:
            return {
                "success": False,
                "kind": "runtime_error",
                "error": "Blocked by sandbox policy: " + "; ".join(violations),
            }, EXIT_RUNTIME_ERROR

    if policy.get("runtime_guard", True):
        _install_runtime_guard(output_path)

    namespace = {
        "__builtins__": _gated_builtins(policy),
        "__name__": "__transformation__",
        "pd": pd,
        "np": np,
        "datetime": datetime,
        "timedelta": timedelta,
        "parameters": dict(parameters),
    }
    try:
        exec(compile(code, "<transformation>", "exec"), namespace)
    except BaseException as e:
        return {"success": False, "kind": "runtime_error", "error": _describe(e)}, EXIT_RUNTIME_ERROR

    entry = namespace.get(entry_name)
    if not callable(entry):
        return {
            "success": False,
            "kind": "contract_violation",
            "error": f"Code must define a function named {entry_name}(df)",
        }, EXIT_OK

    kwargs = {}
    try:
        signature = inspect.signature(entry)
        accepts_any = any(p.kind == inspect.Parameter.VAR_KEYWORD for p in signature.parameters.values())
        kwargs = {k: v for k, v in parameters.items() if accepts_any or k in signature.parameters}
    except (TypeError, ValueError):
        kwargs = {}

    try:
        result_df = entry(df.copy(), **kwargs)
    except BaseException as e:
        return {"success": False, "kind": "runtime_error", "error": _describe(e)}, EXIT_RUNTIME_ERROR

    if not isinstance(result_df, pd.DataFrame):
        return {
            "success": False,
            "kind": "contract_violation",
            "error": f"{entry_name} must return a pandas DataFrame, got {type(result_df).__name__}",
        }, EXIT_OK

    try:
        columns, rows = _result_records(result_df)
    except Exception as e:
        return {
            "success": False,
            "kind": "contract_violation",
            "error": f"Result could not be converted to rows: {_describe(e)}",
        }, EXIT_OK

    result_row_count = len(rows)
    return {
        "success": True,
        "data": rows,
        "columns": columns,
        "summary": {
            "originalRowCount": original_row_count,
            "resultRowCount": result_row_count,
            "rowsAffected": abs(original_row_count - result_row_count),
            "preview": rows[:preview_rows],
        },
    }, EXIT_OK


def main(argv) -> int:
    if len(argv) != 3:
        sys.stderr.write("usage: sandbox_child.py <input> <output>\n")
        return EXIT_HANDOFF_ERROR
    input_path, output_path = argv[1], argv[2]
    started = time.monotonic()

    try:
        with open(input_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except Exception as e:
        record, exit_code = {"success": False, "kind": "io_error", "error": f"Input handoff unreadable: {_describe(e)}"}, EXIT_HANDOFF_ERROR
    else:
        try:
            record, exit_code = _run(payload, output_path)
        except BaseException as e:
            record, exit_code = {"success": False, "kind": "runtime_error", "error": _describe(e)}, EXIT_RUNTIME_ERROR

    record["childElapsedMs"] = int((time.monotonic() - started) * 1000)
    try:
        text = json.dumps(record, default=_json_default)
    except (TypeError, ValueError) as e:
        record = {"success": False, "kind": "contract_violation", "error": f"Result is not serializable: {_describe(e)}"}
        text = json.dumps(record)
    try:
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(text)
    except OSError as e:
        sys.stderr.write(f"Output handoff unwritable: {_describe(e)}\n")
        return EXIT_HANDOFF_ERROR
    return exit_code


if __name__ == "__main__":
    sys.exit(main(sys.argv))
