"""
Calling-layer contract for the transformation pipeline.

TransformService is what an HTTP layer or the CLI talks to: it turns datasets
into rows and schemas, drives TransformationPipeline runs, keeps the activity
log and playbooks in a RecordStore, and serves downloads from persisted results.
"""

import io
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from src.graph.graph import PipelineConfig, TransformationPipeline
from src.utils.models import PipelineRun, TransformationUnit
from src.utils.run_context import RunContext
from src.utils.run_storage import PLAYBOOKS, RESULTS, RUNS, InMemoryRecordStore, RecordStore
from src.utils.sandbox_executor import SandboxExecutor
from src.utils.schema_summary import infer_columns

SAMPLE_ROWS = 5
DOWNLOAD_FORMATS = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def _as_frame(dataset: Any) -> pd.DataFrame:
    if dataset is None:
        raise ValueError("A dataset is required")
    if isinstance(dataset, pd.DataFrame):
        frame = dataset
    else:
        frame = pd.DataFrame(list(dataset))
    if frame.empty and len(frame.columns) == 0:
        raise ValueError("Dataset has no columns")
    return frame


def _sample_rows(frame: pd.DataFrame, n: int = SAMPLE_ROWS) -> List[Dict[str, Any]]:
    head = frame.head(n)
    return head.astype(object).where(pd.notna(head), None).to_dict("records")


@dataclass
class RunHandle:
    """A submitted run: wait on `future`, stop it with `cancel()`."""

    future: Future
    context: RunContext

    def cancel(self, reason: str = "canceled by caller") -> None:
        self.context.cancel(reason)

    def result(self, timeout: Optional[float] = None) -> PipelineRun:
        return self.future.result(timeout=timeout)


class TransformService:
    def __init__(
        self,
        generator: Any = None,
        executor: Optional[SandboxExecutor] = None,
        store: Optional[RecordStore] = None,
        config: Optional[PipelineConfig] = None,
        max_workers: int = 4,
    ):
        if generator is None:
            from src.agents.code_generator import CodeGeneratorAgent

            generator = CodeGeneratorAgent()
        self.generator = generator
        self.store = store or InMemoryRecordStore()
        self.pipeline = TransformationPipeline(generator, executor=executor, config=config)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transform-run")
        self._pool_lock = threading.Lock()

    # Generate

    def generate(
        self,
        instruction: str,
        columns: Sequence[Any],
        sample: Optional[Sequence[Dict[str, Any]]] = None,
        context: Optional[RunContext] = None,
    ) -> TransformationUnit:
        """Never raises for generation problems; a failure comes back as a stub unit."""
        return self.generator.generate(instruction, list(columns or []), list(sample or []), context=context)

    # Run

    def run(
        self,
        unit: TransformationUnit,
        dataset: Any,
        parameters: Optional[Dict[str, Any]] = None,
        instruction: str = "",
        columns: Optional[Sequence[Any]] = None,
        input_is_sample: bool = False,
        context: Optional[RunContext] = None,
    ) -> PipelineRun:
        frame = _as_frame(dataset)
        return self._drive(
            frame,
            instruction=instruction,
            columns=columns,
            unit=unit,
            parameters=parameters,
            input_is_sample=input_is_sample,
            context=context,
        )

    def generate_and_run(
        self,
        instruction: str,
        dataset: Any,
        parameters: Optional[Dict[str, Any]] = None,
        columns: Optional[Sequence[Any]] = None,
        input_is_sample: bool = False,
        context: Optional[RunContext] = None,
    ) -> PipelineRun:
        frame = _as_frame(dataset)
        return self._drive(
            frame,
            instruction=instruction,
            columns=columns,
            parameters=parameters,
            input_is_sample=input_is_sample,
            context=context,
        )

    def run_playbook(
        self,
        playbook_id: str,
        dataset: Any,
        overrides: Optional[Dict[str, Any]] = None,
        input_is_sample: bool = False,
        context: Optional[RunContext] = None,
    ) -> PipelineRun:
        playbook = self.store.get(PLAYBOOKS, playbook_id)
        if playbook is None:
            raise KeyError(f"Playbook '{playbook_id}' not found")
        frame = _as_frame(dataset)
        unit = TransformationUnit.from_dict(playbook.get("unit") or {})
        self.store.increment(PLAYBOOKS, playbook_id, "usageCount")
        return self._drive(
            frame,
            instruction=playbook.get("instruction") or "",
            unit=unit,
            parameters=overrides,
            substitute=True,
            playbook_id=playbook_id,
            input_is_sample=input_is_sample,
            context=context,
        )

    def _drive(
        self,
        frame: pd.DataFrame,
        instruction: str,
        columns: Optional[Sequence[Any]] = None,
        unit: Optional[TransformationUnit] = None,
        parameters: Optional[Dict[str, Any]] = None,
        substitute: bool = False,
        playbook_id: Optional[str] = None,
        input_is_sample: bool = False,
        context: Optional[RunContext] = None,
    ) -> PipelineRun:
        record = self.store.insert(RUNS, {
            "instruction": instruction,
            "playbookId": playbook_id,
            "status": "running",
            "parameters": dict(parameters or {}),
            "inputIsSample": input_is_sample,
        })
        run = self.pipeline.run(
            instruction,
            list(columns) if columns else infer_columns(frame),
            frame,
            sample=_sample_rows(frame),
            unit=unit,
            parameters=parameters,
            substitute=substitute,
            playbook_id=playbook_id,
            input_is_sample=input_is_sample,
            context=context,
            run_id=record["id"],
        )
        self._persist_run(run)
        return run

    def _persist_run(self, run: PipelineRun) -> None:
        last = run.final_attempt
        result = run.final_result
        changes: Dict[str, Any] = {
            "status": run.final_status,
            "generatedCode": last.unit.source if last else None,
            "parameters": dict(last.bound_parameters) if last else {},
            "attemptCount": len(run.attempts),
            "executionTimeMs": result.execution_time_ms if result else None,
            "resultSummary": None,
            "errorMessage": None,
            "errorKind": None,
            "endedAt": run.ended_at,
        }
        if run.final_status == "completed":
            summary = result.summary()
            summary.pop("preview", None)
            changes["resultSummary"] = summary
            self.store.insert(
                RESULTS,
                {"runId": run.run_id, "columns": list(result.columns), "rows": list(result.output_rows)},
                record_id=run.run_id,
            )
        else:
            changes["errorMessage"] = run.failure_message
            changes["errorKind"] = run.failure_kind
        self.store.update(RUNS, run.run_id, changes)

    # Background runs

    def submit(self, method: str, *args: Any, deadline_s: Optional[float] = None, **kwargs: Any) -> RunHandle:
        """
        Runs one of run / run_playbook / generate_and_run on the worker pool
        with its own RunContext, so the caller can cancel it.
        """
        targets: Dict[str, Callable[..., PipelineRun]] = {
            "run": self.run,
            "run_playbook": self.run_playbook,
            "generate_and_run": self.generate_and_run,
        }
        if method not in targets:
            raise ValueError(f"Unknown run method '{method}'")
        context = RunContext(deadline_s=deadline_s or self.pipeline.config.run_deadline_s)
        with self._pool_lock:
            future = self._pool.submit(targets[method], *args, context=context, **kwargs)
        return RunHandle(future=future, context=context)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    # Playbooks

    def save_playbook(
        self,
        name: str,
        unit: TransformationUnit,
        instruction: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not (name or "").strip():
            raise ValueError("Playbook name must not be empty")
        if unit.generation_failed:
            raise ValueError("Cannot save a playbook from a failed generation")
        return self.store.insert(PLAYBOOKS, {
            "name": name.strip(),
            "description": description,
            "instruction": instruction,
            "unit": unit.to_dict(),
            "usageCount": 0,
        })

    def get_playbook(self, playbook_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(PLAYBOOKS, playbook_id)

    def list_playbooks(self) -> List[Dict[str, Any]]:
        return self.store.list(PLAYBOOKS)

    # Activity log and downloads

    def recent_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self.store.list(RUNS, limit=limit)

    def download(self, run_id: str, fmt: str = "csv") -> Tuple[str, str, bytes]:
        """(filename, content_type, payload) for a completed run's full output."""
        fmt = (fmt or "csv").lower()
        if fmt not in DOWNLOAD_FORMATS:
            raise ValueError(f"Unsupported download format '{fmt}'")
        stored = self.store.get(RESULTS, run_id)
        if stored is None:
            raise KeyError(f"No stored results for run '{run_id}'")
        frame = pd.DataFrame(stored.get("rows") or [], columns=stored.get("columns") or None)
        if fmt == "csv":
            payload = frame.to_csv(index=False).encode("utf-8")
        else:
            buffer = io.BytesIO()
            frame.to_excel(buffer, index=False, sheet_name="Results", engine="openpyxl")
            payload = buffer.getvalue()
        return f"results_{run_id}.{fmt}", DOWNLOAD_FORMATS[fmt], payload
