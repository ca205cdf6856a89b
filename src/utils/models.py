"""
Core records shared by the generator, binder, sandbox and pipeline.

All records are immutable; a repair always produces a new TransformationUnit and
every execution produces a new ExecutionResult.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

ENTRY_FUNCTION = "transform_data"
PREVIEW_ROWS = 10

PARAMETER_TYPES = ("string", "number", "date", "boolean")
CONFIDENCE_LEVELS = ("high", "medium", "low")

# Failure taxonomy
GENERATION_FAILURE = "generation_failure"
CONTRACT_VIOLATION = "contract_violation"
RUNTIME_ERROR = "runtime_error"
TIMEOUT = "timeout"
SPAWN_ERROR = "spawn_error"
IO_ERROR = "io_error"
CANCELED = "canceled"

REPAIRABLE_KINDS = frozenset({RUNTIME_ERROR, CONTRACT_VIOLATION})

ErrorKind = Literal[
    "generation_failure",
    "contract_violation",
    "runtime_error",
    "timeout",
    "spawn_error",
    "io_error",
    "canceled",
]
Confidence = Literal["high", "medium", "low"]
RunStatus = Literal["completed", "failed"]


class PipelineError(Exception):
    """Raised inside the pipeline when a step fails with a known error kind."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    inferred_type: str = "text"
    position: int = 0

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ColumnDescriptor":
        return cls(
            name=str(payload.get("name")),
            inferred_type=str(payload.get("inferredType") or payload.get("type") or "text"),
            position=int(payload.get("position", payload.get("index", 0)) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "inferredType": self.inferred_type, "position": self.position}


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    type: str = "string"
    default_value: Any = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ParameterSpec":
        ptype = str(payload.get("type") or "string").strip().lower()
        if ptype not in PARAMETER_TYPES:
            ptype = "string"
        default = payload.get("defaultValue", payload.get("default_value"))
        description = payload.get("description")
        return cls(
            name=str(payload.get("name") or "").strip(),
            type=ptype,
            default_value=default,
            description=str(description) if description else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = {"name": self.name, "type": self.type, "defaultValue": self.default_value}
        if self.description:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class TransformationUnit:
    source: str
    declared_parameters: Tuple[ParameterSpec, ...] = ()
    confidence: str = "low"
    explanation: str = ""
    generation_failed: bool = False

    def parameter_names(self) -> List[str]:
        return [p.name for p in self.declared_parameters]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.source,
            "confidence": self.confidence,
            "parameters": [p.to_dict() for p in self.declared_parameters],
            "explanation": self.explanation,
            "generationFailed": self.generation_failed,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TransformationUnit":
        params = tuple(ParameterSpec.from_dict(p) for p in payload.get("parameters") or [] if isinstance(p, dict))
        confidence = str(payload.get("confidence") or "low").lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = "low"
        return cls(
            source=str(payload.get("code") or payload.get("source") or ""),
            declared_parameters=params,
            confidence=confidence,
            explanation=str(payload.get("explanation") or ""),
            generation_failed=bool(payload.get("generationFailed", False)),
        )


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    execution_time_ms: int = 0
    output_rows: Tuple[Dict[str, Any], ...] = ()
    columns: Tuple[str, ...] = ()
    original_row_count: int = 0
    result_row_count: int = 0
    rows_affected: int = 0
    preview: Tuple[Dict[str, Any], ...] = ()
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def failure(cls, kind: str, message: str, execution_time_ms: int = 0) -> "ExecutionResult":
        return cls(
            success=False,
            error_kind=kind,
            error_message=message,
            execution_time_ms=execution_time_ms,
        )

    @classmethod
    def from_rows(
        cls,
        rows: List[Dict[str, Any]],
        columns: List[str],
        original_row_count: int,
        execution_time_ms: int,
        preview_rows: int = PREVIEW_ROWS,
    ) -> "ExecutionResult":
        result_row_count = len(rows)
        return cls(
            success=True,
            execution_time_ms=execution_time_ms,
            output_rows=tuple(rows),
            columns=tuple(columns),
            original_row_count=original_row_count,
            result_row_count=result_row_count,
            rows_affected=abs(original_row_count - result_row_count),
            preview=tuple(rows[:preview_rows]),
        )

    def summary(self) -> Dict[str, Any]:
        if not self.success:
            return {
                "success": False,
                "errorKind": self.error_kind,
                "errorMessage": self.error_message,
                "executionTimeMs": self.execution_time_ms,
            }
        return {
            "success": True,
            "originalRowCount": self.original_row_count,
            "resultRowCount": self.result_row_count,
            "rowsAffected": self.rows_affected,
            "preview": list(self.preview),
            "columns": list(self.columns),
            "executionTimeMs": self.execution_time_ms,
        }


@dataclass(frozen=True)
class Attempt:
    unit: TransformationUnit
    result: ExecutionResult
    bound_parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit": self.unit.to_dict(),
            "boundParameters": dict(self.bound_parameters),
            "result": self.result.summary(),
        }


@dataclass(frozen=True)
class PipelineRun:
    run_id: str
    instruction: str
    attempts: Tuple[Attempt, ...]
    final_status: str
    playbook_id: Optional[str] = None
    failure_kind: Optional[str] = None
    failure_message: Optional[str] = None
    failed_attempt: Optional[int] = None
    input_is_sample: bool = False
    started_at: str = ""
    ended_at: str = ""

    @property
    def final_attempt(self) -> Optional[Attempt]:
        return self.attempts[-1] if self.attempts else None

    @property
    def final_result(self) -> Optional[ExecutionResult]:
        last = self.final_attempt
        return last.result if last else None

    @property
    def output_rows(self) -> List[Dict[str, Any]]:
        result = self.final_result
        if self.final_status != "completed" or result is None:
            return []
        return list(result.output_rows)

    def to_summary(self, audit: bool = False) -> Dict[str, Any]:
        """
        Caller-facing snapshot. Only the final attempt is exposed unless
        audit=True, in which case the full lineage is included.
        """
        last = self.final_attempt
        summary: Dict[str, Any] = {
            "runId": self.run_id,
            "status": self.final_status,
            "instruction": self.instruction,
            "playbookId": self.playbook_id,
            "attemptCount": len(self.attempts),
            "inputIsSample": self.input_is_sample,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "generatedCode": last.unit.source if last else None,
            "parameters": dict(last.bound_parameters) if last else {},
            "summary": last.result.summary() if last else None,
        }
        if self.final_status == "failed":
            summary["error"] = {
                "kind": self.failure_kind,
                "message": self.failure_message,
                "attempt": self.failed_attempt,
            }
        if audit:
            summary["attempts"] = [a.to_dict() for a in self.attempts]
        return summary


def utc_now_iso() -> str:
    return datetime.utcnow().isoformat()


