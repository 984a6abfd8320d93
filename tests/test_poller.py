from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from datetime import timedelta

import allure

from gen_batch.orchestrator.models import RequestStatus
from gen_batch.orchestrator.poller import PollRegistry
from gen_batch.orchestrator.repository import GenerationRepository

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Poll Loops"),
]


def _registry(
    repository: GenerationRepository,
    *,
    timeout: timedelta,
    stop_event: threading.Event,
    interval_seconds: float = 0.01,
    jitter_seconds: float = 0.0,
) -> PollRegistry:
    return PollRegistry(
        repository=repository,
        timeout=timeout,
        interval_seconds=interval_seconds,
        jitter_seconds=jitter_seconds,
        stop_event=stop_event,
        on_fault=lambda error: None,
        rng=random.Random(1),
    )


def _wait_until(predicate: Callable[[], bool], seconds: float = 5.0) -> bool:
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_delay_stays_within_jitter_bounds(repository: GenerationRepository) -> None:
    registry = _registry(
        repository,
        timeout=timedelta(seconds=210),
        stop_event=threading.Event(),
        interval_seconds=2.0,
        jitter_seconds=0.25,
    )

    delays = [registry.next_delay() for _ in range(200)]

    assert all(1.75 <= delay <= 2.25 for delay in delays)
    assert len(set(delays)) > 1


def test_silent_request_times_out_and_loop_exits(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    submit: Callable[..., list],
) -> None:
    (request_id,) = add_requests("never answered")
    submit(request_id, "op-1")
    stop_event = threading.Event()
    registry = _registry(repository, timeout=timedelta(0), stop_event=stop_event)

    assert registry.start(request_id) is True
    assert registry.start(request_id) is False
    assert _wait_until(lambda: not registry.active_ids())
    stop_event.set()

    request = repository.get_request(request_id=request_id)
    assert request.status == RequestStatus.TIMEOUT
    assert request.done_at is not None


def test_no_loops_start_after_stop(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    submit: Callable[..., list],
) -> None:
    (request_id,) = add_requests("prompt")
    submit(request_id, "op-1")
    stop_event = threading.Event()
    stop_event.set()
    registry = _registry(repository, timeout=timedelta(0), stop_event=stop_event)

    assert registry.start(request_id) is False
    assert repository.get_request(request_id=request_id).status == RequestStatus.IN_PROGRESS
