from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from gen_batch.orchestrator.evaluator import evaluate_request_status
from gen_batch.orchestrator.models import AttemptStatus, RequestStatus

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Status Evaluation"),
]

SUBMIT_AT = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)
TIMEOUT = timedelta(seconds=210)

PENDING = AttemptStatus.PENDING.value
ACTIVE = AttemptStatus.ACTIVE.value
OK = AttemptStatus.SUCCESSFUL.value
FAILED = AttemptStatus.FAILED.value
CANCELLED = AttemptStatus.CANCELLED.value


def _evaluate(statuses: list[str | None], *, elapsed: float = 10.0) -> RequestStatus:
    return evaluate_request_status(
        statuses,
        submit_at=SUBMIT_AT,
        now=SUBMIT_AT + timedelta(seconds=elapsed),
        timeout=TIMEOUT,
    )


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ([OK], RequestStatus.DONE),
        ([OK, FAILED], RequestStatus.DONE),
        ([OK, CANCELLED, OK], RequestStatus.DONE),
        ([FAILED], RequestStatus.FAILED),
        ([FAILED, CANCELLED], RequestStatus.FAILED),
        ([PENDING], RequestStatus.IN_PROGRESS),
        ([OK, ACTIVE], RequestStatus.IN_PROGRESS),
        ([FAILED, None], RequestStatus.IN_PROGRESS),
        ([], RequestStatus.IN_PROGRESS),
    ],
)
def test_status_is_derived_from_attempt_multiset(
    statuses: list[str | None],
    expected: RequestStatus,
) -> None:
    assert _evaluate(statuses) == expected


def test_unfinished_attempts_time_out_after_budget() -> None:
    assert _evaluate([PENDING], elapsed=210) == RequestStatus.IN_PROGRESS
    assert _evaluate([PENDING], elapsed=210.5) == RequestStatus.TIMEOUT


def test_zero_attempts_never_done_or_failed() -> None:
    assert _evaluate([], elapsed=5) == RequestStatus.IN_PROGRESS
    assert _evaluate([], elapsed=10_000) == RequestStatus.TIMEOUT


def test_terminal_attempts_win_over_elapsed_budget() -> None:
    assert _evaluate([OK], elapsed=10_000) == RequestStatus.DONE
    assert _evaluate([CANCELLED], elapsed=10_000) == RequestStatus.FAILED


def test_missing_submit_time_never_times_out() -> None:
    status = evaluate_request_status(
        [PENDING],
        submit_at=None,
        now=SUBMIT_AT + timedelta(days=3),
        timeout=TIMEOUT,
    )
    assert status == RequestStatus.IN_PROGRESS


def test_evaluation_is_order_independent() -> None:
    assert _evaluate([FAILED, OK, CANCELLED]) == _evaluate([CANCELLED, FAILED, OK])
