"""Per-request jittered poll loops used for wall-clock timeout detection."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from datetime import timedelta

from gen_batch.orchestrator.models import RequestStatus
from gen_batch.orchestrator.repository import GenerationRepository

logger = logging.getLogger(__name__)


class PollRegistry:
    """Owns at most one poll loop thread per in_progress request.

    Each loop sleeps ``interval ± jitter``, re-runs the evaluator for its
    request and exits as soon as the request leaves in_progress.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GenerationRepository,
        timeout: timedelta,
        interval_seconds: float,
        jitter_seconds: float,
        stop_event: threading.Event,
        on_fault: Callable[[BaseException], None],
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.timeout = timeout
        self.interval_seconds = interval_seconds
        self.jitter_seconds = jitter_seconds
        self.stop_event = stop_event
        self.on_fault = on_fault
        self._random = rng or random.Random()  # noqa: S311
        self._lock = threading.Lock()
        self._threads: dict[int, threading.Thread] = {}

    def start(self, request_id: int) -> bool:
        """Start a loop for the request unless one is already running."""

        with self._lock:
            if self.stop_event.is_set() or request_id in self._threads:
                return False
            thread = threading.Thread(
                target=self._run,
                args=(request_id,),
                name=f"poll-{request_id}",
                daemon=True,
            )
            self._threads[request_id] = thread
        thread.start()
        return True

    def active_ids(self) -> set[int]:
        with self._lock:
            return set(self._threads)

    def join_all(self, *, timeout: float) -> None:
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def next_delay(self) -> float:
        return max(
            0.0,
            self.interval_seconds + self._random.uniform(-self.jitter_seconds, self.jitter_seconds),
        )

    def _run(self, request_id: int) -> None:
        try:
            while not self.stop_event.wait(self.next_delay()):
                try:
                    result = self.repository.evaluate_request(
                        request_id=request_id,
                        timeout=self.timeout,
                    )
                except RuntimeError as error:
                    logger.exception("Poll loop for request %s failed", request_id)
                    self.on_fault(error)
                    return
                if result.status != RequestStatus.IN_PROGRESS:
                    if result.changed:
                        logger.info("Request %s finished as %s", request_id, result.status.value)
                    return
        finally:
            with self._lock:
                self._threads.pop(request_id, None)
