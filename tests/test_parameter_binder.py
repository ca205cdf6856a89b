import pytest

from src.utils.models import PipelineError, ParameterSpec, TransformationUnit
from src.utils.parameter_binder import (
    bind,
    bind_for_execution,
    check_placeholders,
    entry_arguments,
    substitute_parameters,
)


def _unit(code, params):
    return TransformationUnit(source=code, declared_parameters=tuple(params), confidence="high")


THRESHOLD_CODE = (
    "def transform_data(df, threshold=1000):\n"
    "    return df[df['amount'] > threshold]\n"
)


def test_threshold_default_and_override():
    unit = _unit(THRESHOLD_CODE, [ParameterSpec("threshold", "number", 1000)])

    assert bind(unit, {}) == {"threshold": 1000}
    assert bind(unit, {"threshold": 500}) == {"threshold": 500}


def test_binding_is_total_and_ignores_undeclared_names():
    params = [
        ParameterSpec("status", "string", "Closed"),
        ParameterSpec("limit", "number", 10),
        ParameterSpec("since", "date", "2024-01-01"),
        ParameterSpec("drop_empty", "boolean", True),
    ]
    unit = _unit("def transform_data(df, status='Closed', limit=10, since='2024-01-01', drop_empty=True):\n    return df\n", params)

    bound = bind(unit, {"limit": "25", "unknown": 1})

    assert set(bound) == {"status", "limit", "since", "drop_empty"}
    assert bound["limit"] == 25
    assert bound["status"] == "Closed"
    assert "unknown" not in bound


def test_coercion_of_string_inputs():
    unit = _unit(
        "def transform_data(df, rate=0.5, keep=False, day='2024-01-01'):\n    return df\n",
        [
            ParameterSpec("rate", "number", 0.5),
            ParameterSpec("keep", "boolean", False),
            ParameterSpec("day", "date", "2024-01-01"),
        ],
    )

    bound = bind(unit, {"rate": "1,250.75", "keep": "yes", "day": "2024-03-31"})

    assert bound == {"rate": 1250.75, "keep": True, "day": "2024-03-31"}


def test_uncoercible_value_is_contract_violation():
    unit = _unit(THRESHOLD_CODE, [ParameterSpec("threshold", "number", 1000)])

    with pytest.raises(PipelineError) as exc:
        bind(unit, {"threshold": "a lot"})
    assert exc.value.kind == "contract_violation"


def test_entry_arguments():
    names, takes_kwargs = entry_arguments("def transform_data(df, a=1, *, b=2, **extra):\n    return df\n")

    assert names == {"df", "a", "b"}
    assert takes_kwargs is True


def test_substitution_skips_strings_and_comments():
    code = (
        "def transform_data(df):\n"
        "    # keep rows above min_amount\n"
        "    label = 'min_amount'\n"
        "    return df[df['amount'] >= min_amount]\n"
    )
    new_code, used = substitute_parameters(code, {"min_amount": 250})

    assert used == ("min_amount",)
    assert "df['amount'] >= 250" in new_code
    assert "# keep rows above min_amount" in new_code
    assert "label = 'min_amount'" in new_code


def test_substitution_does_not_touch_longer_identifiers():
    code = "def transform_data(df):\n    limit_total = 3\n    return df.head(limit)\n"
    new_code, _ = substitute_parameters(code, {"limit": 5})

    assert "limit_total = 3" in new_code
    assert "df.head(5)" in new_code


def test_substitution_string_literal_is_quoted():
    code = "def transform_data(df):\n    return df[df['Status'] == status_value]\n"
    new_code, _ = substitute_parameters(code, {"status_value": "Closed"})

    assert "df['Status'] == 'Closed'" in new_code


@pytest.mark.parametrize(
    "code",
    [
        "def transform_data(df):\n    status = 'x'\n    return df[df['Status'] == status]\n",
        "def transform_data(df):\n    return df.status\n",
        "def transform_data(df):\n    return df.rename(columns=dict(status='s'))\n",
        "def status(df):\n    return df\n",
        "import pandas as status\ndef transform_data(df):\n    return df\n",
    ],
)
def test_substitution_guard_rejects_non_placeholder_names(code):
    with pytest.raises(PipelineError) as exc:
        substitute_parameters(code, {"status": "Closed"})
    assert exc.value.kind == "contract_violation"


def test_reserved_and_builtin_names_are_rejected():
    code = "def transform_data(df):\n    return df\n"
    for name in ("df", "pd", "len", "transform_data"):
        with pytest.raises(PipelineError):
            check_placeholders(code, [name])


def test_bind_for_execution_passes_accepted_arguments_as_keywords():
    unit = _unit(THRESHOLD_CODE, [ParameterSpec("threshold", "number", 1000)])

    bound = bind_for_execution(unit, {"threshold": 10}, substitute=True)

    assert bound.source == unit.source
    assert bound.substituted == ()
    assert bound.parameters == {"threshold": 10}


def test_bind_for_execution_inlines_placeholders_for_playbooks():
    code = "def transform_data(df):\n    return df[df['amount'] >= min_amount]\n"
    unit = _unit(code, [ParameterSpec("min_amount", "number", 100)])

    bound = bind_for_execution(unit, {"min_amount": "250"}, substitute=True)

    assert bound.substituted == ("min_amount",)
    assert "df['amount'] >= 250" in bound.source
    assert unit.source == code


def test_fresh_run_never_rewrites_source():
    code = "def transform_data(df):\n    return df[df['amount'] >= min_amount]\n"
    unit = _unit(code, [ParameterSpec("min_amount", "number", 100)])

    bound = bind_for_execution(unit, {"min_amount": 5})

    assert bound.source == code
    assert bound.parameters == {"min_amount": 5}
