import pandas as pd

from src.utils.models import ColumnDescriptor
from src.utils.schema_summary import infer_columns, summarize_columns, summarize_schema


def test_summary_lists_columns_in_position_order():
    columns = [
        {"name": "amount", "inferredType": "number", "position": 1},
        {"name": "Status", "inferredType": "category", "position": 0},
    ]

    assert summarize_columns(columns) == "Status (category), amount (number)"


def test_summary_includes_at_most_three_sample_rows():
    columns = [ColumnDescriptor("id", "number", 0)]
    sample = [{"id": i} for i in range(10)]

    text = summarize_schema(columns, sample)

    assert text.startswith("Dataset columns: id (number)")
    assert "Sample data:" in text
    assert "id: 2" in text
    assert "id: 3" not in text


def test_summary_without_sample():
    text = summarize_schema(["a", "b"], [])

    assert "a (text), b (text)" in text
    assert "Sample data: (none)" in text


def test_long_values_are_clipped():
    text = summarize_schema(["note"], [{"note": "x" * 500}])

    assert "..." in text
    assert "x" * 200 not in text


def test_infer_columns_from_frame():
    frame = pd.DataFrame({
        "id": [1, 2, 3, 4],
        "active": [True, False, True, True],
        "joined": pd.to_datetime(["2024-01-01", "2024-01-02", "2024-01-03", "2024-01-04"]),
        "Status": ["Open", "Closed", "Open", "Open"],
        "comment": ["a", "b", "c", "d"],
    })

    columns = infer_columns(frame)

    assert [(c.name, c.inferred_type, c.position) for c in columns] == [
        ("id", "number", 0),
        ("active", "boolean", 1),
        ("joined", "date", 2),
        ("Status", "category", 3),
        ("comment", "text", 4),
    ]
