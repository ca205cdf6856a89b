"""
Pipeline orchestrator.

A langgraph state machine that drives one run through
generate -> bind -> execute -> (repair -> bind -> execute) -> finalize.
Every execution, and every binding failure, appends one attempt; a run ends
`completed` or `failed` and is never resumed.
"""

import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from dotenv import load_dotenv
from langgraph.graph import END, START, StateGraph

from src.utils.models import (
    CANCELED,
    REPAIRABLE_KINDS,
    Attempt,
    ExecutionResult,
    PipelineError,
    PipelineRun,
    TransformationUnit,
    utc_now_iso,
)
from src.utils.parameter_binder import BoundUnit, bind_for_execution
from src.utils.run_context import RunContext
from src.utils.run_logger import finalize_run_log, init_run_log, log_run_event
from src.utils.sandbox_executor import SandboxExecutor

load_dotenv()

MAX_REPAIR_ATTEMPTS = 1
RUN_DEADLINE_S = 180


@dataclass(frozen=True)
class PipelineConfig:
    max_repair_attempts: int = MAX_REPAIR_ATTEMPTS
    run_deadline_s: Optional[float] = RUN_DEADLINE_S
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        deadline = float(os.getenv("RUN_DEADLINE_S", str(RUN_DEADLINE_S)))
        return cls(
            max_repair_attempts=max(0, int(os.getenv("MAX_REPAIR_ATTEMPTS", str(MAX_REPAIR_ATTEMPTS)))),
            run_deadline_s=deadline if deadline > 0 else None,
            log_dir=os.getenv("RUN_LOG_DIR") or None,
        )


class PipelineState(TypedDict, total=False):
    run_id: str
    instruction: str
    schema: List[Any]
    sample: List[Dict[str, Any]]
    input_rows: Any
    supplied_parameters: Dict[str, Any]
    substitute: bool
    playbook_id: Optional[str]
    input_is_sample: bool
    context: RunContext
    started_at: str
    # Working state
    phase: str
    unit: Optional[TransformationUnit]
    bound: Optional[BoundUnit]
    attempts: List[Attempt]
    repairs_used: int
    failure: Optional[Dict[str, str]]
    run: PipelineRun


def _last_result(state: PipelineState) -> Optional[ExecutionResult]:
    attempts = state.get("attempts") or []
    return attempts[-1].result if attempts else None


class TransformationPipeline:
    """
    Owns the compiled graph plus the collaborators its nodes call. A single
    instance can serve concurrent runs: all per-run data lives in the state.
    """

    def __init__(
        self,
        generator: Any,
        executor: Optional[SandboxExecutor] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.generator = generator
        self.executor = executor or SandboxExecutor()
        self.config = config or PipelineConfig.from_env()
        self.graph = self._build_graph()

    def _abort(self, state: PipelineState, stage: str, err: PipelineError) -> Dict[str, Any]:
        event = "canceled" if err.kind == CANCELED else "deadline_exceeded"
        print(f"ABORT: {stage}: {err.message}")
        log_run_event(state["run_id"], event, {"stage": stage, "message": err.message}, log_dir=self.config.log_dir)
        return {"phase": "failed", "failure": {"kind": err.kind, "message": err.message}}

    # Nodes

    def _generate(self, state: PipelineState) -> Dict[str, Any]:
        print("--- [1] Code Generator: generating transformation ---")
        run_id = state["run_id"]
        log_run_event(run_id, "generation_started", {"instruction": state["instruction"]}, log_dir=self.config.log_dir)
        try:
            state["context"].check("generation")
            unit = self.generator.generate(
                state["instruction"], state["schema"], state.get("sample") or [], context=state["context"]
            )
        except PipelineError as e:
            return self._abort(state, "generation", e)
        log_run_event(
            run_id,
            "generation_completed",
            {
                "confidence": unit.confidence,
                "generation_failed": unit.generation_failed,
                "parameters": unit.parameter_names(),
            },
            log_dir=self.config.log_dir,
        )
        return {"phase": "generated", "unit": unit}

    def _bind(self, state: PipelineState) -> Dict[str, Any]:
        unit = state["unit"]
        try:
            state["context"].check("binding")
        except PipelineError as e:
            return self._abort(state, "binding", e)
        try:
            bound = bind_for_execution(unit, state.get("supplied_parameters"), substitute=state.get("substitute", False))
        except PipelineError as e:
            print(f"CRITICAL: Parameter binding failed: {e.message}")
            result = ExecutionResult.failure(e.kind, e.message)
            attempts = list(state.get("attempts") or []) + [Attempt(unit=unit, result=result)]
            log_run_event(
                state["run_id"],
                "binding_failed",
                {"attempt": len(attempts), "kind": e.kind, "message": e.message},
                log_dir=self.config.log_dir,
            )
            return {"phase": "bind_failed", "bound": None, "attempts": attempts}
        return {"phase": "bound", "bound": bound}

    def _execute(self, state: PipelineState) -> Dict[str, Any]:
        unit = state["unit"]
        bound = state["bound"]
        attempt_no = len(state.get("attempts") or []) + 1
        print(f"--- [2] Sandbox: executing attempt {attempt_no} ---")
        try:
            state["context"].check("execution")
        except PipelineError as e:
            return self._abort(state, "execution", e)
        log_run_event(
            state["run_id"],
            "execution_started",
            {"attempt": attempt_no, "parameters": bound.parameters, "substituted": list(bound.substituted)},
            log_dir=self.config.log_dir,
        )
        result = self.executor.execute(
            unit,
            bound.parameters,
            state["input_rows"],
            context=state["context"],
            source=bound.source,
        )
        attempts = list(state.get("attempts") or []) + [
            Attempt(unit=unit, result=result, bound_parameters=dict(bound.parameters))
        ]
        if result.success:
            log_run_event(
                state["run_id"],
                "execution_completed",
                {
                    "attempt": attempt_no,
                    "rows_affected": result.rows_affected,
                    "result_row_count": result.result_row_count,
                    "execution_time_ms": result.execution_time_ms,
                },
                log_dir=self.config.log_dir,
            )
        else:
            print(f"CRITICAL: Execution failed ({result.error_kind}): {result.error_message}")
            log_run_event(
                state["run_id"],
                "execution_failed",
                {
                    "attempt": attempt_no,
                    "kind": result.error_kind,
                    "message": result.error_message,
                    "execution_time_ms": result.execution_time_ms,
                },
                log_dir=self.config.log_dir,
            )
        return {"phase": "executed", "attempts": attempts}

    def _repair(self, state: PipelineState) -> Dict[str, Any]:
        last = _last_result(state)
        repairs_used = int(state.get("repairs_used") or 0) + 1
        print(f"--- [3] Code Generator: repair {repairs_used}/{self.config.max_repair_attempts} ---")
        log_run_event(
            state["run_id"],
            "repair_started",
            {"repair": repairs_used, "kind": last.error_kind, "message": last.error_message},
            log_dir=self.config.log_dir,
        )
        try:
            state["context"].check("repair")
            unit = self.generator.repair(
                state["unit"].source, last.error_message or "", state["schema"], context=state["context"]
            )
        except PipelineError as e:
            return self._abort(state, "repair", e)
        log_run_event(
            state["run_id"],
            "repair_completed",
            {"confidence": unit.confidence, "generation_failed": unit.generation_failed},
            log_dir=self.config.log_dir,
        )
        return {"phase": "repaired", "unit": unit, "bound": None, "repairs_used": repairs_used}

    def _finalize(self, state: PipelineState) -> Dict[str, Any]:
        attempts = tuple(state.get("attempts") or [])
        failure = state.get("failure")
        last = attempts[-1].result if attempts else None

        if failure is None and last is not None and last.success:
            status, kind, message, failed_attempt = "completed", None, None, None
        elif failure is not None:
            status, kind, message = "failed", failure["kind"], failure["message"]
            failed_attempt = len(attempts) or None
        else:
            status = "failed"
            kind = last.error_kind if last else CANCELED
            message = last.error_message if last else "Run ended without an execution"
            failed_attempt = len(attempts) or None

        run = PipelineRun(
            run_id=state["run_id"],
            instruction=state.get("instruction") or "",
            attempts=attempts,
            final_status=status,
            playbook_id=state.get("playbook_id"),
            failure_kind=kind,
            failure_message=message,
            failed_attempt=failed_attempt,
            input_is_sample=bool(state.get("input_is_sample")),
            started_at=state.get("started_at") or "",
            ended_at=utc_now_iso(),
        )
        finalize_run_log(
            state["run_id"],
            {"status": status, "attempts": len(attempts), "error_kind": kind, "error_message": message},
            log_dir=self.config.log_dir,
        )
        return {"phase": status, "run": run}

    # Routing

    def _route_start(self, state: PipelineState) -> str:
        return "bind" if state.get("unit") is not None else "generate"

    def _route_after_generate(self, state: PipelineState) -> str:
        return "finalize" if state.get("failure") else "bind"

    def _route_after_bind(self, state: PipelineState) -> str:
        if state.get("failure"):
            return "finalize"
        if state.get("phase") == "bind_failed":
            return self._repair_or_finalize(state)
        return "execute"

    def _route_after_execute(self, state: PipelineState) -> str:
        if state.get("failure"):
            return "finalize"
        last = _last_result(state)
        if last is None or last.success:
            return "finalize"
        return self._repair_or_finalize(state)

    def _repair_or_finalize(self, state: PipelineState) -> str:
        last = _last_result(state)
        budget_left = int(state.get("repairs_used") or 0) < self.config.max_repair_attempts
        if last is not None and last.error_kind in REPAIRABLE_KINDS and budget_left:
            return "repair"
        return "finalize"

    def _route_after_repair(self, state: PipelineState) -> str:
        return "finalize" if state.get("failure") else "bind"

    def _build_graph(self):
        workflow = StateGraph(PipelineState)
        workflow.add_node("generate", self._generate)
        workflow.add_node("bind", self._bind)
        workflow.add_node("execute", self._execute)
        workflow.add_node("repair", self._repair)
        workflow.add_node("finalize", self._finalize)

        workflow.add_conditional_edges(START, self._route_start, {"generate": "generate", "bind": "bind"})
        workflow.add_conditional_edges(
            "generate", self._route_after_generate, {"bind": "bind", "finalize": "finalize"}
        )
        workflow.add_conditional_edges(
            "bind",
            self._route_after_bind,
            {"execute": "execute", "repair": "repair", "finalize": "finalize"},
        )
        workflow.add_conditional_edges(
            "execute", self._route_after_execute, {"repair": "repair", "finalize": "finalize"}
        )
        workflow.add_conditional_edges(
            "repair", self._route_after_repair, {"bind": "bind", "finalize": "finalize"}
        )
        workflow.add_edge("finalize", END)
        return workflow.compile()

    def run(
        self,
        instruction: str,
        schema: Sequence[Any],
        input_rows: Any,
        sample: Optional[Sequence[Dict[str, Any]]] = None,
        unit: Optional[TransformationUnit] = None,
        parameters: Optional[Dict[str, Any]] = None,
        substitute: bool = False,
        playbook_id: Optional[str] = None,
        input_is_sample: bool = False,
        context: Optional[RunContext] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        """
        Drives one run to a terminal status. Without `unit` the run starts by
        generating code; with `unit` it starts at binding.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        context = context or RunContext(deadline_s=self.config.run_deadline_s)
        init_run_log(
            run_id,
            {
                "instruction": instruction,
                "playbook_id": playbook_id,
                "starts_with": "bind" if unit is not None else "generate",
                "max_repair_attempts": self.config.max_repair_attempts,
                "input_is_sample": input_is_sample,
            },
            log_dir=self.config.log_dir,
        )
        initial: PipelineState = {
            "run_id": run_id,
            "instruction": instruction or "",
            "schema": list(schema or []),
            "sample": list(sample or []),
            "input_rows": input_rows,
            "supplied_parameters": dict(parameters or {}),
            "substitute": substitute,
            "playbook_id": playbook_id,
            "input_is_sample": input_is_sample,
            "context": context,
            "started_at": utc_now_iso(),
            "phase": "created",
            "unit": unit,
            "bound": None,
            "attempts": [],
            "repairs_used": 0,
            "failure": None,
        }
        # generate + (bind, execute, repair) per attempt + finalize
        recursion_limit = 3 * (self.config.max_repair_attempts + 1) + 5
        final_state = self.graph.invoke(initial, config={"recursion_limit": recursion_limit})
        return final_state["run"]
