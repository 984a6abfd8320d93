"""Routes classified service responses to the store."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import timedelta

from gen_batch.interaction.base import AckEvent, EventFeed, RoutedEvent, StatusUpdateEvent
from gen_batch.orchestrator.errors import PersistenceFailure
from gen_batch.orchestrator.models import EvaluationResult
from gen_batch.orchestrator.repository import GenerationRepository

logger = logging.getLogger(__name__)


class ResponseRouter:
    """Consumes the event feed on its own thread.

    Acks are handed to ``ack_sink`` (the submission feeder); status updates
    are applied to attempts and their requests re-evaluated.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GenerationRepository,
        feed: EventFeed,
        ack_sink: Callable[[AckEvent], None],
        request_timeout: timedelta,
        duration_sec: int,
        stop_event: threading.Event | None = None,
        on_fault: Callable[[BaseException], None] | None = None,
        receive_timeout_seconds: float = 0.1,
    ) -> None:
        self.repository = repository
        self.feed = feed
        self.ack_sink = ack_sink
        self.request_timeout = request_timeout
        self.duration_sec = duration_sec
        self.stop_event = stop_event or threading.Event()
        self.on_fault = on_fault
        self.receive_timeout_seconds = receive_timeout_seconds

    def run(self) -> None:
        while not self.stop_event.is_set():
            event = self.feed.get(timeout=self.receive_timeout_seconds)
            if event is None:
                continue
            try:
                self.dispatch(event)
            except PersistenceFailure as error:
                logger.error("Response router halted: %s", error)  # noqa: TRY400
                if self.on_fault is not None:
                    self.on_fault(error)
                return

    def dispatch(self, event: RoutedEvent) -> list[EvaluationResult]:
        if isinstance(event, AckEvent):
            self.ack_sink(event)
            return []
        if isinstance(event, StatusUpdateEvent):
            return self._apply_status_update(event)
        raise TypeError(f"Unsupported routed event: {event!r}")

    def _apply_status_update(self, event: StatusUpdateEvent) -> list[EvaluationResult]:
        matched = self.repository.apply_status_updates(
            event.attempts,
            duration_sec=self.duration_sec,
        )
        unknown = [
            attempt.operation_id
            for attempt in event.attempts
            if attempt.operation_id not in matched
        ]
        if unknown:
            logger.debug("Status update for unknown operations ignored: %s", unknown)

        results: list[EvaluationResult] = []
        for request_id in dict.fromkeys(matched.values()):
            result = self.repository.evaluate_request(
                request_id=request_id,
                timeout=self.request_timeout,
            )
            if result.changed:
                logger.info(
                    "Request %s -> %s (%d download(s) enqueued)",
                    request_id,
                    result.status.value,
                    result.downloads_enqueued,
                )
            results.append(result)
        return results
