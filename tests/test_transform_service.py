import io

import pandas as pd
import pytest

from src.graph.graph import PipelineConfig
from src.graph.service import TransformService
from src.utils.models import ParameterSpec, TransformationUnit
from src.utils.run_storage import InMemoryRecordStore, JsonDirRecordStore
from src.utils.sandbox_executor import SandboxExecutor, SubprocessIsolation
from src.utils.sandbox_policy import ExecutionLimits


class StubGenerator:
    def __init__(self, unit):
        self.unit = unit
        self.calls = []

    def generate(self, instruction, schema, sample, context=None):
        self.calls.append((instruction, schema, sample))
        return self.unit

    def repair(self, prior_source, error_message, schema, context=None):
        return self.unit


def _frame():
    statuses = ["Open", "Closed", "Open", "Pending", "Closed", "Open", "Open", "Closed", "Pending", "Open"]
    return pd.DataFrame({"id": range(1, 11), "Status": statuses, "amount": [i * 100 for i in range(1, 11)]})


REMOVE_CLOSED = TransformationUnit(
    source="def transform_data(df, status='Closed'):\n    return df[df['Status'] != status]\n",
    declared_parameters=(ParameterSpec("status", "string", "Closed"),),
    confidence="high",
    explanation="Removes rows with the given status.",
)


def _service(tmp_path, unit=REMOVE_CLOSED, store=None):
    handoffs = tmp_path / "handoffs"
    handoffs.mkdir(exist_ok=True)
    executor = SandboxExecutor(limits=ExecutionLimits(timeout_s=20), backend=SubprocessIsolation(handoff_dir=str(handoffs)))
    config = PipelineConfig(max_repair_attempts=1, run_deadline_s=60, log_dir=str(tmp_path / "logs"))
    return TransformService(
        generator=StubGenerator(unit),
        executor=executor,
        store=store or InMemoryRecordStore(),
        config=config,
    )


def test_generate_and_run_closed_scenario(tmp_path):
    service = _service(tmp_path)

    run = service.generate_and_run("remove rows where Status equals Closed", _frame())

    assert run.final_status == "completed"
    assert run.final_result.result_row_count == 7
    assert run.final_result.rows_affected == 3
    instruction, schema, sample = service.generator.calls[0]
    assert [c.name for c in schema] == ["id", "Status", "amount"]
    assert len(sample) == 5

    recent = service.recent_runs()
    assert recent[0]["id"] == run.run_id
    assert recent[0]["status"] == "completed"
    assert recent[0]["resultSummary"]["rowsAffected"] == 3


def test_run_with_supplied_unit_and_parameters(tmp_path):
    service = _service(tmp_path)

    run = service.run(REMOVE_CLOSED, _frame(), parameters={"status": "Open"}, instruction="remove open")

    assert run.final_status == "completed"
    assert run.final_result.result_row_count == 5
    assert service.generator.calls == []


def test_explicit_columns_are_passed_through(tmp_path):
    service = _service(tmp_path)
    columns = [{"name": "id", "inferredType": "number", "position": 0}]

    service.generate_and_run("x", _frame(), columns=columns)

    assert service.generator.calls[0][1] == columns


def test_playbook_run_substitutes_placeholders_and_counts_usage(tmp_path):
    unit = TransformationUnit(
        source="def transform_data(df):\n    return df[df['amount'] >= min_amount]\n",
        declared_parameters=(ParameterSpec("min_amount", "number", 100),),
        confidence="high",
    )
    service = _service(tmp_path, store=JsonDirRecordStore(str(tmp_path / "store")))
    playbook = service.save_playbook("Big orders", unit, "keep orders above a minimum", description="demo")

    run = service.run_playbook(playbook["id"], _frame(), overrides={"min_amount": 800})

    assert run.final_status == "completed"
    assert run.playbook_id == playbook["id"]
    assert run.final_result.result_row_count == 3
    assert run.final_attempt.bound_parameters == {"min_amount": 800}
    assert service.get_playbook(playbook["id"])["usageCount"] == 1

    service.run_playbook(playbook["id"], _frame())
    assert service.get_playbook(playbook["id"])["usageCount"] == 2
    assert [p["name"] for p in service.list_playbooks()] == ["Big orders"]


def test_unknown_playbook_raises_key_error(tmp_path):
    service = _service(tmp_path)

    with pytest.raises(KeyError):
        service.run_playbook("missing", _frame())


def test_missing_dataset_raises_value_error(tmp_path):
    service = _service(tmp_path)

    with pytest.raises(ValueError):
        service.run(REMOVE_CLOSED, None)


def test_failed_generation_cannot_become_playbook(tmp_path):
    service = _service(tmp_path)
    stub = TransformationUnit(source="# Error generating code: x", generation_failed=True)

    with pytest.raises(ValueError):
        service.save_playbook("broken", stub, "x")


def test_download_uses_persisted_full_results(tmp_path):
    service = _service(tmp_path)
    run = service.generate_and_run("remove closed", _frame(), input_is_sample=True)

    filename, content_type, payload = service.download(run.run_id, "csv")
    frame = pd.read_csv(io.BytesIO(payload))

    assert filename == f"results_{run.run_id}.csv"
    assert content_type == "text/csv"
    assert len(frame) == 7
    assert list(frame.columns) == ["id", "Status", "amount"]
    assert run.input_is_sample is True

    _, xlsx_type, xlsx_payload = service.download(run.run_id, "xlsx")
    assert xlsx_payload[:2] == b"PK"
    assert "spreadsheetml" in xlsx_type


def test_download_of_failed_run_raises(tmp_path):
    bad = TransformationUnit(source="def transform_data(df):\n    return 1\n", confidence="low")
    service = _service(tmp_path, unit=bad)

    run = service.generate_and_run("broken", _frame())

    assert run.final_status == "failed"
    assert len(run.attempts) == 2
    assert service.recent_runs()[0]["errorKind"] == "contract_violation"
    with pytest.raises(KeyError):
        service.download(run.run_id)


def test_submitted_run_can_be_canceled(tmp_path):
    spin = TransformationUnit(source="def transform_data(df):\n    while True:\n        pass\n", confidence="low")
    service = _service(tmp_path)

    handle = service.submit("run", spin, _frame())
    handle.cancel("stop requested")
    run = handle.result(timeout=30)
    service.shutdown()

    assert run.final_status == "failed"
    assert run.failure_kind == "canceled"


def test_submitted_runs_complete_concurrently(tmp_path):
    service = _service(tmp_path)

    handles = [service.submit("run", REMOVE_CLOSED, _frame()) for _ in range(3)]
    runs = [h.result(timeout=60) for h in handles]
    service.shutdown()

    assert {r.final_status for r in runs} == {"completed"}
    assert len({r.run_id for r in runs}) == 3
    assert not any((tmp_path / "handoffs").iterdir())


def test_submit_rejects_unknown_method(tmp_path):
    service = _service(tmp_path)

    with pytest.raises(ValueError):
        service.submit("delete_everything")
