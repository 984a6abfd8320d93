"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from gen_batch.orchestrator.models import AckAttempt, AttemptStatus, AttemptView, PromptInput
from gen_batch.orchestrator.repository import GenerationRepository
from gen_batch.storage.sqlmodel_models import GenerationRequest


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[GenerationRepository]:
    repository = GenerationRepository(tmp_path / "queue.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def add_requests(repository: GenerationRepository) -> Callable[..., list[int]]:
    """Insert prompts as requests #1..N and return their row ids."""

    def _load(*texts: str, max_retries: int = 3) -> list[int]:
        start = repository.next_free_index()
        repository.insert_requests(
            [PromptInput(index=start + offset, text=text) for offset, text in enumerate(texts)],
            max_retries=max_retries,
        )
        return [
            request.id
            for request in repository.list_requests(limit=1000)
            if request.request_index >= start
        ]

    return _load


@pytest.fixture()
def submit(repository: GenerationRepository) -> Callable[..., list[AttemptView]]:
    """Walk a queued request through submitting to in_progress with attempts."""

    def _submit(
        request_id: int,
        *operation_ids: str,
        status: str = AttemptStatus.PENDING.value,
    ) -> list[AttemptView]:
        assert repository.mark_submitting(request_id=request_id)
        return repository.mark_in_progress_with_attempts(
            request_id=request_id,
            attempts=[
                AckAttempt(operation_id=operation_id, scene_id=None, status=status)
                for operation_id in operation_ids
            ],
        )

    return _submit


@pytest.fixture()
def force_status(repository: GenerationRepository) -> Callable[[int, str], None]:
    """Overwrite a request status directly, simulating a crash mid-transition."""

    def _force(request_id: int, status: str) -> None:
        with Session(repository.engine) as session:
            session.exec(
                sa_update(GenerationRequest)
                .where(col(GenerationRequest.id) == request_id)
                .values(status=status),
            )
            session.commit()

    return _force
