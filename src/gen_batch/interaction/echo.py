"""Simulated interaction layer for smoke runs and tests."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Iterable

import httpx

from gen_batch.interaction.base import STATUS_URL_MARKER, SUBMIT_URL_MARKER, EventFeed
from gen_batch.orchestrator.errors import FatalSessionFailure
from gen_batch.orchestrator.models import AttemptStatus

logger = logging.getLogger(__name__)

ECHO_BASE_URL = "https://echo.invalid/artifacts"
ECHO_MODEL = "veo_3_1_t2v_fast"


class EchoInteraction:
    """Answers every trigger with an ack and a scripted status sequence.

    Responses are emitted as raw service payloads through
    ``EventFeed.publish_response`` so they go through the same classifier as
    real traffic.
    """

    def __init__(  # noqa: PLR0913
        self,
        feed: EventFeed,
        *,
        outputs: int = 1,
        base_url: str = ECHO_BASE_URL,
        model: str = ECHO_MODEL,
        ack_delay_seconds: float = 0.05,
        completion_delay_seconds: float = 0.1,
        failing_prompts: Iterable[str] = (),
    ) -> None:
        self.feed = feed
        self.outputs = outputs
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.ack_delay_seconds = ack_delay_seconds
        self.completion_delay_seconds = completion_delay_seconds
        self.failing_prompts = frozenset(failing_prompts)
        self.triggered: list[str] = []
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._timers: list[threading.Timer] = []
        self._session_alive = True

    def kill_session(self) -> None:
        self._session_alive = False

    def check_session(self) -> None:
        if not self._session_alive:
            raise FatalSessionFailure("Echo session is closed.")

    def trigger_submission(self, prompt_text: str) -> None:
        self.check_session()
        with self._lock:
            self.triggered.append(prompt_text)
            operation_ids = [f"operations/echo-{next(self._counter):06d}" for _ in range(self.outputs)]
        failing = prompt_text in self.failing_prompts

        self._schedule(self.ack_delay_seconds, self._publish_ack, operation_ids)
        self._schedule(
            self.ack_delay_seconds + self.completion_delay_seconds / 2,
            self._publish_status,
            operation_ids,
            AttemptStatus.ACTIVE.value,
        )
        final_status = AttemptStatus.FAILED if failing else AttemptStatus.SUCCESSFUL
        self._schedule(
            self.ack_delay_seconds + self.completion_delay_seconds,
            self._publish_status,
            operation_ids,
            final_status.value,
        )

    def close(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

    def locator_for(self, operation_id: str) -> str:
        return f"{self.base_url}/{operation_id.rsplit('/', 1)[-1]}.mp4"

    def _schedule(self, delay: float, callback, *args: object) -> None:  # noqa: ANN001
        timer = threading.Timer(delay, callback, args=args)
        timer.daemon = True
        with self._lock:
            self._timers.append(timer)
        timer.start()

    def _publish_ack(self, operation_ids: list[str]) -> None:
        payload = {
            "operations": [
                {
                    "operation": {"name": operation_id},
                    "sceneId": f"scene-{operation_id.rsplit('-', 1)[-1]}",
                    "status": AttemptStatus.PENDING.value,
                }
                for operation_id in operation_ids
            ],
        }
        self.feed.publish_response(f"https://echo.invalid/v1/video:{SUBMIT_URL_MARKER}", payload)

    def _publish_status(self, operation_ids: list[str], status: str) -> None:
        operations = []
        for operation_id in operation_ids:
            video: dict[str, str] = {"model": self.model}
            if status == AttemptStatus.SUCCESSFUL.value:
                video["fifeUrl"] = self.locator_for(operation_id)
            operations.append(
                {
                    "operation": {"name": operation_id, "metadata": {"video": video}},
                    "status": status,
                },
            )
        self.feed.publish_response(
            f"https://echo.invalid/v1/video:{STATUS_URL_MARKER}",
            {"operations": operations},
        )


def build_echo_transport() -> httpx.MockTransport:
    """In-memory transport that serves a small payload for any artifact URL."""

    def _handler(request: httpx.Request) -> httpx.Response:
        body = f"echo artifact {request.url.path}\n".encode()
        return httpx.Response(200, content=body, headers={"content-type": "video/mp4"})

    return httpx.MockTransport(_handler)
