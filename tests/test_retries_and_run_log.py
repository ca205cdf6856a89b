import time

import pytest

from src.utils.retries import call_with_retries, is_transient_error_like
from src.utils.run_context import RunContext
from src.utils.run_logger import finalize_run_log, init_run_log, log_run_event, read_run_log


def test_transient_errors_are_retried_with_backoff():
    delays = []
    outcomes = [ConnectionError("503 Service Unavailable"), TimeoutError("timed out"), "ok"]

    def _flaky():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert call_with_retries(_flaky, max_retries=3, backoff_factor=2, initial_delay=1, sleep=delays.append) == "ok"
    assert delays == [1, 2]


def test_non_transient_errors_propagate_immediately():
    calls = []

    def _broken():
        calls.append(1)
        raise ValueError("invalid api key")

    with pytest.raises(ValueError):
        call_with_retries(_broken, max_retries=5, sleep=lambda _: None)
    assert len(calls) == 1


def test_is_transient_error_like():
    assert is_transient_error_like("429 Too Many Requests")
    assert not is_transient_error_like("KeyError: 'amount'")


def test_run_log_round_trip(tmp_path):
    log_dir = str(tmp_path / "logs")
    init_run_log("abc", {"instruction": "x"}, log_dir=log_dir)
    log_run_event("abc", "execution_started", {"attempt": 1}, log_dir=log_dir)
    finalize_run_log("abc", {"status": "completed"}, log_dir=log_dir)

    events = read_run_log("abc", log_dir=log_dir)

    assert [e["event"] for e in events] == ["run_start", "execution_started", "run_end"]
    assert events[1]["payload"] == {"attempt": 1}
    assert events[2]["payload"]["status"] == "completed"


def test_run_context_deadline_and_cancel():
    context = RunContext(deadline_s=0.05)
    assert context.bound_timeout(30) <= 0.05
    time.sleep(0.1)
    assert context.expired

    canceled = RunContext()
    canceled.cancel("stop")
    assert canceled.is_canceled
    assert canceled.cancel_reason == "stop"
