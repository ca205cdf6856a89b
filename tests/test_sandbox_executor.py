import os
import threading
from dataclasses import replace

import pandas as pd

from src.utils.models import ParameterSpec, TransformationUnit
from src.utils.parameter_binder import bind
from src.utils.run_context import RunContext
from src.utils.sandbox_executor import SandboxExecutor, SubprocessIsolation
from src.utils.sandbox_policy import ExecutionLimits, SandboxPolicy


def _executor(tmp_path, **limit_overrides):
    limits = replace(ExecutionLimits(timeout_s=20), **limit_overrides)
    return SandboxExecutor(limits=limits, backend=SubprocessIsolation(handoff_dir=str(tmp_path)))


def _unit(code, params=()):
    return TransformationUnit(source=code, declared_parameters=tuple(params), confidence="high")


def _status_rows():
    statuses = ["Open", "Closed", "Open", "Pending", "Closed", "Open", "Open", "Closed", "Pending", "Open"]
    return [{"id": i + 1, "Status": s, "amount": (i + 1) * 100} for i, s in enumerate(statuses)]


def _handoffs(tmp_path):
    return [name for name in os.listdir(tmp_path) if name.startswith("transform_")]


def test_remove_closed_rows_reports_rows_affected(tmp_path):
    code = (
        "def transform_data(df):\n"
        "    return df[df['Status'] != 'Closed'].reset_index(drop=True)\n"
    )
    result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

    assert result.success, result.error_message
    assert result.original_row_count == 10
    assert result.result_row_count == 7
    assert result.rows_affected == 3
    assert len(result.output_rows) == 7
    assert len(result.preview) == 7
    assert all(row["Status"] != "Closed" for row in result.output_rows)
    assert list(result.columns) == ["id", "Status", "amount"]
    assert _handoffs(tmp_path) == []


def test_rows_affected_is_absolute_difference_when_rows_grow(tmp_path):
    code = (
        "def transform_data(df):\n"
        "    return pd.concat([df, df], ignore_index=True)\n"
    )
    result = _executor(tmp_path).execute(_unit(code), {}, pd.DataFrame(_status_rows()))

    assert result.success, result.error_message
    assert result.result_row_count == 20
    assert result.rows_affected == abs(result.original_row_count - result.result_row_count) == 10
    assert len(result.preview) == 10


def test_threshold_parameter_passed_as_keyword(tmp_path):
    code = (
        "def transform_data(df, threshold=1000):\n"
        "    return df[df['amount'] > threshold]\n"
    )
    unit = _unit(code, [ParameterSpec("threshold", "number", 1000)])
    executor = _executor(tmp_path)

    default_result = executor.execute(unit, bind(unit, {}), _status_rows())
    override_result = executor.execute(unit, bind(unit, {"threshold": 500}), _status_rows())

    assert default_result.success and override_result.success
    assert default_result.result_row_count == 0
    assert override_result.result_row_count == 5


def test_scalar_return_is_contract_violation(tmp_path):
    code = "def transform_data(df):\n    return len(df)\n"
    result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

    assert not result.success
    assert result.error_kind == "contract_violation"
    assert "DataFrame" in result.error_message
    assert result.output_rows == ()
    assert _handoffs(tmp_path) == []


def test_missing_entry_function_is_contract_violation(tmp_path):
    result = _executor(tmp_path).execute(_unit("# Error generating code: boom"), {}, _status_rows())

    assert result.error_kind == "contract_violation"
    assert "transform_data" in result.error_message


def test_runtime_error_has_no_traceback(tmp_path):
    code = "def transform_data(df):\n    return df['missing_column'].to_frame()\n"
    result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "runtime_error"
    assert result.error_message.startswith("KeyError")
    assert "Traceback" not in result.error_message
    assert _handoffs(tmp_path) == []


def test_denied_import_blocked_by_static_scan(tmp_path):
    code = (
        "def transform_data(df):\n"
        "    import os\n"
        "    os.system('echo hi')\n"
        "    return df\n"
    )
    result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "runtime_error"
    assert "Blocked by sandbox policy" in result.error_message


def test_denied_import_blocked_in_namespace_without_static_scan(tmp_path):
    code = (
        "def transform_data(df):\n"
        "    import socket\n"
        "    return df\n"
    )
    executor = _executor(tmp_path, policy=SandboxPolicy(static_scan=False))
    result = executor.execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "runtime_error"
    assert "ImportError" in result.error_message
    assert "socket" in result.error_message


def test_denied_builtin_missing_without_static_scan(tmp_path):
    code = (
        "def transform_data(df):\n"
        "    open('leak.txt', 'w')\n"
        "    return df\n"
    )
    executor = _executor(tmp_path, policy=SandboxPolicy(static_scan=False))
    result = executor.execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "runtime_error"
    assert "NameError" in result.error_message
    assert not os.path.exists(tmp_path / "leak.txt")


def test_allowed_data_modules_import(tmp_path):
    code = (
        "import math\n"
        "import re\n"
        "def transform_data(df):\n"
        "    df = df.copy()\n"
        "    df['root'] = df['amount'].apply(math.sqrt)\n"
        "    df['code'] = df['Status'].apply(lambda s: re.sub('[aeiou]', '', s))\n"
        "    return df\n"
    )
    result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

    assert result.success, result.error_message
    assert result.output_rows[0]["code"] == "Opn"


def test_timeout_kills_child_and_returns_no_rows(tmp_path):
    code = (
        "def transform_data(df):\n"
        "    while True:\n"
        "        pass\n"
    )
    result = _executor(tmp_path, timeout_s=1).execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "timeout"
    assert result.output_rows == ()
    assert result.execution_time_ms < 15000
    assert _handoffs(tmp_path) == []


def test_cancel_kills_child_and_cleans_handoffs(tmp_path):
    code = (
        "def transform_data(df):\n"
        "    while True:\n"
        "        pass\n"
    )
    context = RunContext()
    timer = threading.Timer(0.5, context.cancel, args=("test cancel",))
    timer.start()
    try:
        result = _executor(tmp_path).execute(_unit(code), {}, _status_rows(), context=context)
    finally:
        timer.cancel()

    assert result.error_kind == "canceled"
    assert "test cancel" in result.error_message
    assert _handoffs(tmp_path) == []


def test_spawn_error_cleans_handoffs(tmp_path):
    executor = _executor(tmp_path, python_executable=str(tmp_path / "no-such-python"))
    result = executor.execute(_unit("def transform_data(df):\n    return df\n"), {}, _status_rows())

    assert result.error_kind == "spawn_error"
    assert _handoffs(tmp_path) == []


def test_child_environment_has_no_inherited_secrets(tmp_path, monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "secret-value")
    limits = ExecutionLimits()
    env = limits.child_env()

    assert "GOOGLE_API_KEY" not in env
    assert env["PYTHONPATH"] == ""
    assert env["PATH"] == "/usr/bin:/bin"


def test_source_override_runs_substituted_code(tmp_path):
    unit = _unit("def transform_data(df):\n    return df.head(limit)\n")
    result = _executor(tmp_path).execute(
        unit, {}, _status_rows(), source="def transform_data(df):\n    return df.head(2)\n"
    )

    assert result.success, result.error_message
    assert result.result_row_count == 2


def test_blocked_module_reached_through_allowed_module_is_rejected(tmp_path):
    marker = tmp_path / "pwned.txt"
    code = (
        "import platform\n"
        "def transform_data(df):\n"
        f"    platform.os.system('touch {marker}')\n"
        "    return df\n"
    )
    result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "runtime_error"
    assert "Blocked by sandbox policy" in result.error_message
    assert not marker.exists()


def test_runtime_guard_refuses_process_spawn_without_static_scan(tmp_path):
    marker = tmp_path / "pwned.txt"
    code = (
        "import platform\n"
        "def transform_data(df):\n"
        f"    platform.os.system('touch {marker}')\n"
        "    return df\n"
    )
    executor = _executor(tmp_path, policy=SandboxPolicy(static_scan=False))
    result = executor.execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "runtime_error"
    assert result.error_message.startswith("PermissionError")
    assert "os.system" in result.error_message
    assert not marker.exists()
    assert _handoffs(tmp_path) == []


def test_runtime_guard_refuses_file_writes_without_static_scan(tmp_path):
    marker = tmp_path / "leak.txt"
    code = (
        "import logging\n"
        "def transform_data(df):\n"
        f"    logging.os.open({str(marker)!r}, logging.os.O_WRONLY | logging.os.O_CREAT)\n"
        "    return df\n"
    )
    executor = _executor(tmp_path, policy=SandboxPolicy(static_scan=False))
    result = executor.execute(_unit(code), {}, _status_rows())

    assert result.error_kind == "runtime_error"
    assert "PermissionError" in result.error_message
    assert not marker.exists()


def test_runtime_guard_allows_lazy_stdlib_imports(tmp_path):
    code = (
        "import statistics\n"
        "def transform_data(df):\n"
        "    df = df.copy()\n"
        "    df['median'] = statistics.median(df['amount'].tolist())\n"
        "    return df\n"
    )
    result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

    assert result.success, result.error_message
    assert result.output_rows[0]["median"] == 550


def test_system_exit_in_transformation_is_runtime_error(tmp_path):
    for code in (
        "def transform_data(df):\n    raise SystemExit(0)\n",
        "raise KeyboardInterrupt('stop')\ndef transform_data(df):\n    return df\n",
    ):
        result = _executor(tmp_path).execute(_unit(code), {}, _status_rows())

        assert result.error_kind == "runtime_error", code
        assert result.error_message.split(":")[0] in ("SystemExit", "KeyboardInterrupt")
        assert _handoffs(tmp_path) == []


def test_unserializable_input_is_io_error_and_cleans_handoffs(tmp_path):
    rows = [{("a", "b"): 1}]
    result = _executor(tmp_path).execute(_unit("def transform_data(df):\n    return df\n"), {}, rows)

    assert result.error_kind == "io_error"
    assert "input handoff" in result.error_message
    assert _handoffs(tmp_path) == []


def _scripted_executor(tmp_path, script_body):
    script = tmp_path / "scripted_child.py"
    script.write_text(script_body)
    backend = SubprocessIsolation(handoff_dir=str(tmp_path), child_script=str(script))
    return SandboxExecutor(limits=ExecutionLimits(timeout_s=20), backend=backend)


def test_child_exiting_without_output_is_io_error(tmp_path):
    executor = _scripted_executor(tmp_path, "import sys\nsys.exit(0)\n")
    result = executor.execute(_unit("def transform_data(df):\n    return df\n"), {}, _status_rows())

    assert result.error_kind == "io_error"
    assert "no result handoff" in result.error_message
    assert _handoffs(tmp_path) == []


def test_unreadable_output_is_io_error(tmp_path):
    executor = _scripted_executor(tmp_path, "import os\nimport sys\nos.mkdir(sys.argv[2])\n")
    result = executor.execute(_unit("def transform_data(df):\n    return df\n"), {}, _status_rows())

    assert result.error_kind == "io_error"
    assert "Could not read result handoff" in result.error_message
    assert _handoffs(tmp_path) == []
