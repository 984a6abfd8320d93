"""Sequential submission feeder enforcing the in-flight ceiling."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from enum import Enum

from gen_batch.interaction.base import AckEvent, InteractionLayer, check_session
from gen_batch.orchestrator.errors import FatalSessionFailure, PersistenceFailure
from gen_batch.orchestrator.models import AckAttempt, RequestView
from gen_batch.orchestrator.poller import PollRegistry
from gen_batch.orchestrator.repository import GenerationRepository

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    """What one feeder tick did."""

    IDLE = "idle"
    PROMOTED = "promoted"
    SUBMITTED = "submitted"
    ACK_TIMEOUT = "ack_timeout"
    TRIGGER_FAILED = "trigger_failed"


class SubmissionFeeder:
    """Picks the oldest queued request, triggers it and waits for its ack.

    The request being submitted is local to ``tick``; acks arrive through
    ``deliver_ack`` and are only ever handled on the feeder thread.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GenerationRepository,
        interaction: InteractionLayer,
        polls: PollRegistry,
        ceiling: int,
        request_timeout: timedelta,
        ack_wait_seconds: float = 10.0,
        heartbeat_seconds: float = 0.4,
        stop_event: threading.Event | None = None,
        on_fault: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.repository = repository
        self.interaction = interaction
        self.polls = polls
        self.ceiling = ceiling
        self.request_timeout = request_timeout
        self.ack_wait_seconds = ack_wait_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.stop_event = stop_event or threading.Event()
        self.on_fault = on_fault
        self._inbox: queue.Queue[AckEvent] = queue.Queue()

    def deliver_ack(self, event: AckEvent) -> None:
        self._inbox.put(event)

    def run(self) -> None:
        """Tick on a fixed heartbeat until stopped or a fault halts the feeder."""

        while not self.stop_event.is_set():
            try:
                self.tick()
            except (FatalSessionFailure, PersistenceFailure) as error:
                logger.error("Submission feeder halted: %s", error)  # noqa: TRY400
                if self.on_fault is not None:
                    self.on_fault(error)
                return
            self.stop_event.wait(self.heartbeat_seconds)

    def tick(self) -> TickOutcome:
        self._drain_inbox()

        request = self.repository.peek_next_queued(ceiling=self.ceiling)
        if request is None:
            return TickOutcome.IDLE

        if self.repository.has_current_attempts(request_id=request.id):
            logger.warning(
                "Request #%s already has attempts; promoting instead of resubmitting",
                request.request_index,
            )
            self.repository.promote_to_in_progress(request_id=request.id)
            self.repository.evaluate_request(request_id=request.id, timeout=self.request_timeout)
            self.polls.start(request.id)
            return TickOutcome.PROMOTED

        check_session(self.interaction)
        if not self.repository.mark_submitting(request_id=request.id):
            return TickOutcome.IDLE

        try:
            self.interaction.trigger_submission(request.prompt_text)
        except FatalSessionFailure:
            self.repository.reset_to_queued(request_id=request.id)
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Submission of request #%s failed: %s", request.request_index, error)
            self.repository.mark_failed(
                request_id=request.id,
                reason=f"Submission trigger failed: {error}",
            )
            return TickOutcome.TRIGGER_FAILED

        logger.info("Submitted request #%s", request.request_index)
        if self._await_ack(request):
            return TickOutcome.SUBMITTED

        if self.repository.reset_to_queued(request_id=request.id):
            logger.warning(
                "No ack for request #%s within %.1fs; requeued",
                request.request_index,
                self.ack_wait_seconds,
            )
        return TickOutcome.ACK_TIMEOUT

    def _await_ack(self, request: RequestView) -> bool:
        deadline = time.monotonic() + self.ack_wait_seconds
        while not self.stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                event = self._inbox.get(timeout=min(remaining, self.heartbeat_seconds))
            except queue.Empty:
                continue
            if self._handle_ack(event, current=request):
                return True
        return False

    def _drain_inbox(self) -> None:
        while True:
            try:
                event = self._inbox.get_nowait()
            except queue.Empty:
                return
            self._handle_ack(event, current=None)

    def _handle_ack(self, event: AckEvent, *, current: RequestView | None) -> bool:
        """Materialize an ack's attempts; True when it resolved ``current``."""

        attempts = _unique_attempts(event.attempts)
        operation_ids = [attempt.operation_id for attempt in attempts]
        known = self.repository.find_operation_ids(operation_ids)
        if known:
            logger.debug("Dropping duplicate ack for operations %s", sorted(known))
            return False

        target = current or self.repository.find_orphan_submitting()
        if target is None:
            logger.warning("Ack for operations %s has no submitting request; dropped", operation_ids)
            return False
        if self.repository.has_current_attempts(request_id=target.id):
            logger.debug("Request #%s already acknowledged; ack dropped", target.request_index)
            return False

        if not attempts:
            self.repository.mark_failed(request_id=target.id, reason="No attempts returned.")
            logger.warning("Ack for request #%s returned no attempts", target.request_index)
            return current is not None

        inserted = self.repository.mark_in_progress_with_attempts(
            request_id=target.id,
            attempts=attempts,
        )
        if not inserted:
            logger.warning("Request #%s left submitting before its ack", target.request_index)
            return False
        logger.info(
            "Request #%s in progress with %d attempt(s)",
            target.request_index,
            len(inserted),
        )
        self.polls.start(target.id)
        return current is not None


def _unique_attempts(attempts: tuple[AckAttempt, ...]) -> list[AckAttempt]:
    """First occurrence of each operation id, in ack order."""

    unique: dict[str, AckAttempt] = {}
    for attempt in attempts:
        if attempt.operation_id in unique:
            logger.debug("Ack repeats operation %s; keeping the first", attempt.operation_id)
            continue
        unique[attempt.operation_id] = attempt
    return list(unique.values())
