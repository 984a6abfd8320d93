"""Interaction-layer contract and routed response events."""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from typing import Any, Protocol

from gen_batch.orchestrator.models import AckAttempt, StatusAttempt

logger = logging.getLogger(__name__)

SUBMIT_URL_MARKER = "batchAsyncGenerateVideoText"
STATUS_URL_MARKER = "batchCheckAsyncVideoGenerationStatus"


@dataclass(slots=True, frozen=True)
class AckEvent:
    """Submission acknowledged; announces the operations created for it."""

    attempts: tuple[AckAttempt, ...]


@dataclass(slots=True, frozen=True)
class StatusUpdateEvent:
    """Latest observed states for a set of operations."""

    attempts: tuple[StatusAttempt, ...]


RoutedEvent = AckEvent | StatusUpdateEvent


class InteractionLayer(Protocol):
    """Protocol implemented by whatever drives the generation service."""

    def trigger_submission(self, prompt_text: str) -> None:
        """Fire-and-forget submission of one prompt.

        Raises ``FatalSessionFailure`` when the driving session is gone; any
        other exception means this one trigger failed.
        """


class EventFeed:
    """Ordered FIFO of routed events published by the interaction layer."""

    def __init__(self) -> None:
        self._queue: queue.Queue[RoutedEvent] = queue.Queue()

    def publish(self, event: RoutedEvent) -> None:
        self._queue.put(event)

    def publish_response(self, url: str, payload: Any) -> RoutedEvent | None:
        """Classify an observed response and publish it when relevant."""

        event = classify_response(url, payload)
        if event is not None:
            self.publish(event)
        return event

    def get(self, *, timeout: float) -> RoutedEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()


def check_session(interaction: object) -> None:
    """Call the optional ``check_session`` hook of an interaction layer."""

    hook = getattr(interaction, "check_session", None)
    if callable(hook):
        hook()


def classify_response(url: str, payload: Any) -> RoutedEvent | None:
    """Turn one observed service response into a routed event.

    Returns None for unrelated traffic or payloads without an operations list.
    """

    if not isinstance(payload, dict):
        return None
    operations = payload.get("operations")
    if not isinstance(operations, list):
        return None

    if SUBMIT_URL_MARKER in url:
        return AckEvent(attempts=tuple(_ack_attempts(operations)))
    if STATUS_URL_MARKER in url:
        return StatusUpdateEvent(attempts=tuple(_status_attempts(operations)))
    return None


def _operation_name(item: dict[str, Any]) -> str | None:
    operation = item.get("operation")
    if not isinstance(operation, dict):
        return None
    name = operation.get("name")
    return name if isinstance(name, str) and name else None


def _ack_attempts(operations: list[Any]) -> list[AckAttempt]:
    attempts: list[AckAttempt] = []
    for item in operations:
        if not isinstance(item, dict):
            continue
        name = _operation_name(item)
        if name is None:
            logger.debug("Skipping ack operation without name: %r", item)
            continue
        attempts.append(
            AckAttempt(
                operation_id=name,
                scene_id=item.get("sceneId"),
                status=item.get("status"),
            ),
        )
    return attempts


def _status_attempts(operations: list[Any]) -> list[StatusAttempt]:
    attempts: list[StatusAttempt] = []
    for item in operations:
        if not isinstance(item, dict):
            continue
        name = _operation_name(item)
        if name is None:
            continue
        metadata = item["operation"].get("metadata")
        video = metadata.get("video") if isinstance(metadata, dict) else None
        if not isinstance(video, dict):
            video = {}
        attempts.append(
            StatusAttempt(
                operation_id=name,
                status=item.get("status"),
                locator=video.get("fifeUrl"),
                model=video.get("model"),
            ),
        )
    return attempts
