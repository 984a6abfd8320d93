from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import timedelta

import allure
import pytest

from gen_batch.interaction.base import AckEvent, StatusUpdateEvent
from gen_batch.orchestrator.errors import FatalSessionFailure, TransientInteractionFailure
from gen_batch.orchestrator.feeder import SubmissionFeeder, TickOutcome
from gen_batch.orchestrator.models import AckAttempt, AttemptStatus, RequestStatus, StatusAttempt
from gen_batch.orchestrator.poller import PollRegistry
from gen_batch.orchestrator.repository import GenerationRepository
from gen_batch.orchestrator.router import ResponseRouter

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Submission Feeder"),
]

TIMEOUT = timedelta(seconds=210)


class ScriptedInteraction:
    """Runs one scripted reaction per trigger, in order; later triggers repeat the last."""

    def __init__(self, *reactions: Callable[[str], None]) -> None:
        self.reactions = list(reactions)
        self.triggered: list[str] = []

    def trigger_submission(self, prompt_text: str) -> None:
        self.triggered.append(prompt_text)
        reaction = self.reactions[min(len(self.triggered), len(self.reactions)) - 1]
        reaction(prompt_text)


def _ack(*operation_ids: str) -> AckEvent:
    return AckEvent(
        attempts=tuple(
            AckAttempt(
                operation_id=operation_id,
                scene_id=f"scene-{operation_id}",
                status=AttemptStatus.PENDING.value,
            )
            for operation_id in operation_ids
        ),
    )


def _silent(_: str) -> None:
    return None


@pytest.fixture()
def stop_event() -> Iterator[threading.Event]:
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture()
def polls(repository: GenerationRepository, stop_event: threading.Event) -> PollRegistry:
    return PollRegistry(
        repository=repository,
        timeout=TIMEOUT,
        interval_seconds=60.0,
        jitter_seconds=0.0,
        stop_event=stop_event,
        on_fault=lambda error: None,
    )


@pytest.fixture()
def make_feeder(
    repository: GenerationRepository,
    polls: PollRegistry,
    stop_event: threading.Event,
) -> Callable[..., SubmissionFeeder]:
    def _make(interaction: object, *, ceiling: int = 5, **kwargs: object) -> SubmissionFeeder:
        return SubmissionFeeder(
            repository=repository,
            interaction=interaction,  # type: ignore[arg-type]
            polls=polls,
            ceiling=ceiling,
            request_timeout=TIMEOUT,
            ack_wait_seconds=kwargs.pop("ack_wait_seconds", 1.0),  # type: ignore[arg-type]
            heartbeat_seconds=0.01,
            stop_event=stop_event,
            **kwargs,  # type: ignore[arg-type]
        )

    return _make


def test_ceiling_keeps_extra_requests_queued_until_a_slot_frees(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
    polls: PollRegistry,
) -> None:
    ids = add_requests(*(f"prompt number {n}" for n in range(1, 8)))
    feeder: SubmissionFeeder

    def _acknowledge(prompt: str) -> None:
        feeder.deliver_ack(_ack(f"op-{prompt.rsplit(' ', 1)[-1]}"))

    feeder = make_feeder(ScriptedInteraction(_acknowledge), ceiling=5)

    outcomes = [feeder.tick() for _ in range(7)]

    assert outcomes == [TickOutcome.SUBMITTED] * 5 + [TickOutcome.IDLE] * 2
    counts = repository.status_counts()
    assert counts.request_count(RequestStatus.IN_PROGRESS) == 5
    assert counts.request_count(RequestStatus.QUEUED) == 2
    assert polls.active_ids() == set(ids[:5])

    router = ResponseRouter(
        repository=repository,
        feed=None,  # type: ignore[arg-type]
        ack_sink=feeder.deliver_ack,
        request_timeout=TIMEOUT,
        duration_sec=8,
    )
    router.dispatch(
        StatusUpdateEvent(
            attempts=(
                StatusAttempt(
                    operation_id="op-1",
                    status=AttemptStatus.SUCCESSFUL.value,
                    locator="https://cdn.example/1.mp4",
                ),
            ),
        ),
    )
    assert feeder.tick() == TickOutcome.SUBMITTED
    counts = repository.status_counts()
    assert counts.request_count(RequestStatus.IN_PROGRESS) == 5
    assert counts.request_count(RequestStatus.QUEUED) == 1
    assert repository.get_request(request_id=ids[5]).status == RequestStatus.IN_PROGRESS


def test_ack_timeout_requeues_and_late_ack_is_not_materialized_twice(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
) -> None:
    (request_id,) = add_requests("slow prompt")
    feeder: SubmissionFeeder

    def _acknowledge(_: str) -> None:
        feeder.deliver_ack(_ack("op-second"))

    feeder = make_feeder(ScriptedInteraction(_silent, _acknowledge), ack_wait_seconds=0.05)

    assert feeder.tick() == TickOutcome.ACK_TIMEOUT
    assert repository.get_request(request_id=request_id).status == RequestStatus.QUEUED

    # The first trigger's ack shows up after the reset.
    feeder.deliver_ack(_ack("op-late"))
    assert feeder.tick() == TickOutcome.SUBMITTED
    feeder.deliver_ack(_ack("op-late"))
    feeder.deliver_ack(_ack("op-second"))
    assert feeder.tick() == TickOutcome.IDLE

    attempts = repository.list_attempts(request_id=request_id)
    assert [attempt.operation_id for attempt in attempts] == ["op-second"]
    assert repository.get_request(request_id=request_id).status == RequestStatus.IN_PROGRESS


def test_trigger_error_marks_request_failed(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
) -> None:
    first, second = add_requests("broken", "fine")

    def _explode(_: str) -> None:
        raise TransientInteractionFailure("button not found")

    feeder = make_feeder(ScriptedInteraction(_explode, _silent), ack_wait_seconds=0.01)

    assert feeder.tick() == TickOutcome.TRIGGER_FAILED
    failed = repository.get_request(request_id=first)
    assert failed.status == RequestStatus.FAILED
    assert "button not found" in (failed.error or "")
    assert feeder.tick() == TickOutcome.ACK_TIMEOUT
    assert repository.get_request(request_id=second).status == RequestStatus.QUEUED


def test_fatal_session_halts_feeder_without_consuming_request(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
) -> None:
    (request_id,) = add_requests("prompt")
    faults: list[BaseException] = []

    def _gone(_: str) -> None:
        raise FatalSessionFailure("invalid session")

    feeder = make_feeder(ScriptedInteraction(_gone), on_fault=faults.append)
    feeder.run()

    assert len(faults) == 1
    assert isinstance(faults[0], FatalSessionFailure)
    assert repository.get_request(request_id=request_id).status == RequestStatus.QUEUED


def test_dead_session_detected_before_trigger(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
) -> None:
    add_requests("prompt")

    class ClosedSession(ScriptedInteraction):
        def check_session(self) -> None:
            raise FatalSessionFailure("closed")

    interaction = ClosedSession(_silent)
    feeder = make_feeder(interaction)

    with pytest.raises(FatalSessionFailure):
        feeder.tick()
    assert interaction.triggered == []
    assert repository.status_counts().request_count(RequestStatus.QUEUED) == 1


def test_request_with_existing_attempts_is_promoted_not_resubmitted(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    submit: Callable[..., list],
    force_status: Callable[[int, str], None],
    make_feeder: Callable[..., SubmissionFeeder],
    polls: PollRegistry,
) -> None:
    (request_id,) = add_requests("prompt")
    submit(request_id, "op-1")
    force_status(request_id, RequestStatus.QUEUED.value)
    interaction = ScriptedInteraction(_silent)
    feeder = make_feeder(interaction)

    assert feeder.tick() == TickOutcome.PROMOTED

    assert interaction.triggered == []
    assert repository.get_request(request_id=request_id).status == RequestStatus.IN_PROGRESS
    assert request_id in polls.active_ids()


def test_ack_without_attempts_fails_request(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
) -> None:
    (request_id,) = add_requests("prompt")
    feeder: SubmissionFeeder

    def _empty(_: str) -> None:
        feeder.deliver_ack(AckEvent(attempts=()))

    feeder = make_feeder(ScriptedInteraction(_empty))

    assert feeder.tick() == TickOutcome.SUBMITTED
    request = repository.get_request(request_id=request_id)
    assert request.status == RequestStatus.FAILED
    assert request.error == "No attempts returned."


def test_orphan_submitting_request_receives_ack_from_inbox(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
) -> None:
    (request_id,) = add_requests("prompt")
    repository.mark_submitting(request_id=request_id)
    feeder = make_feeder(ScriptedInteraction(_silent))

    feeder.deliver_ack(_ack("op-1", "op-2"))
    assert feeder.tick() == TickOutcome.IDLE

    attempts = repository.list_attempts(request_id=request_id)
    assert [attempt.take_index for attempt in attempts] == [0, 1]
    assert repository.get_request(request_id=request_id).status == RequestStatus.IN_PROGRESS


def test_ack_repeating_an_operation_materializes_it_once(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    make_feeder: Callable[..., SubmissionFeeder],
) -> None:
    (request_id,) = add_requests("prompt")
    feeder: SubmissionFeeder

    def _repeat(_: str) -> None:
        feeder.deliver_ack(_ack("op-1", "op-1", "op-2"))

    feeder = make_feeder(ScriptedInteraction(_repeat))

    assert feeder.tick() == TickOutcome.SUBMITTED

    attempts = repository.list_attempts(request_id=request_id)
    assert [(attempt.operation_id, attempt.take_index) for attempt in attempts] == [
        ("op-1", 0),
        ("op-2", 1),
    ]
    assert repository.get_request(request_id=request_id).status == RequestStatus.IN_PROGRESS
