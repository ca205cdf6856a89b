from typing import Any, Dict, Iterable, List, Sequence

import pandas as pd

from src.utils.models import ColumnDescriptor

SAMPLE_ROWS_IN_PROMPT = 3
MAX_VALUE_CHARS = 80


def _coerce_columns(columns: Iterable[Any]) -> List[ColumnDescriptor]:
    out: List[ColumnDescriptor] = []
    for idx, col in enumerate(columns or []):
        if isinstance(col, ColumnDescriptor):
            out.append(col)
        elif isinstance(col, dict):
            desc = ColumnDescriptor.from_dict(col)
            if "position" not in col and "index" not in col:
                desc = ColumnDescriptor(desc.name, desc.inferred_type, idx)
            out.append(desc)
        elif col is not None:
            out.append(ColumnDescriptor(str(col), "text", idx))
    return sorted(out, key=lambda c: c.position)


def _clip(value: Any) -> str:
    text = "" if value is None else str(value)
    if len(text) > MAX_VALUE_CHARS:
        return text[: MAX_VALUE_CHARS - 3] + "..."
    return text


def summarize_columns(columns: Iterable[Any]) -> str:
    return ", ".join(f"{c.name} ({c.inferred_type})" for c in _coerce_columns(columns))


def summarize_schema(columns: Iterable[Any], sample: Sequence[Dict[str, Any]] | None = None) -> str:
    """
    Compact generation context: the column list plus a few sample rows,
    one `key: value` line per row.
    """
    lines = [f"Dataset columns: {summarize_columns(columns)}"]
    rows = [r for r in (sample or [])[:SAMPLE_ROWS_IN_PROMPT] if isinstance(r, dict)]
    if rows:
        lines.append("Sample data:")
        for row in rows:
            lines.append(", ".join(f"{k}: {_clip(v)}" for k, v in row.items()))
    else:
        lines.append("Sample data: (none)")
    return "\n".join(lines)


def _infer_type(series: pd.Series) -> str:
    if pd.api.types.is_bool_dtype(series):
        return "boolean"
    if pd.api.types.is_numeric_dtype(series):
        return "number"
    if pd.api.types.is_datetime64_any_dtype(series):
        return "date"
    non_null = series.dropna()
    if len(non_null) and non_null.nunique() <= max(2, int(len(non_null) * 0.5)):
        return "category"
    return "text"


def infer_columns(df: pd.DataFrame) -> List[ColumnDescriptor]:
    """Best-effort descriptors for callers that hold a DataFrame instead of an ingestion schema."""
    return [ColumnDescriptor(str(col), _infer_type(df.iloc[:, idx]), idx) for idx, col in enumerate(df.columns)]
