"""Runtime configuration for batch orchestration and downloads."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class OrchestratorSettings:
    """Submission, polling and completion settings."""

    concurrency_ceiling: int = 5
    request_timeout_seconds: float = 210.0
    heartbeat_seconds: float = 0.4
    ack_wait_seconds: float = 10.0
    poll_interval_seconds: float = 2.0
    poll_jitter_seconds: float = 0.25
    max_request_retries: int = 3
    stale_in_progress_hours: int = 24
    completion_check_seconds: float = 2.0
    artifact_duration_seconds: int = 8
    manifest_path: Path = Path("dist/manifest.json")


@dataclass(slots=True)
class DownloadSettings:
    """Download worker pool settings."""

    output_dir: Path = Path("dist/videos")
    workers: int = 5
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    idle_wait_seconds: float = 1.0
    http_timeout_seconds: float = 60.0
    extension: str = "mp4"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".gen_batch.db")
    sqlite_busy_timeout_ms: int = 5_000
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    download: DownloadSettings = field(default_factory=DownloadSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local runs."""

        return cls(
            db_path=db_path or Path(os.getenv("GEN_BATCH_DB_PATH", ".gen_batch.db")),
            sqlite_busy_timeout_ms=int(os.getenv("GEN_BATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            orchestrator=OrchestratorSettings(
                concurrency_ceiling=int(os.getenv("GEN_BATCH_CONCURRENCY_CEILING", "5")),
                request_timeout_seconds=float(
                    os.getenv("GEN_BATCH_REQUEST_TIMEOUT_SECONDS", "210"),
                ),
                heartbeat_seconds=float(os.getenv("GEN_BATCH_HEARTBEAT_SECONDS", "0.4")),
                ack_wait_seconds=float(os.getenv("GEN_BATCH_ACK_WAIT_SECONDS", "10")),
                poll_interval_seconds=float(os.getenv("GEN_BATCH_POLL_INTERVAL_SECONDS", "2")),
                poll_jitter_seconds=float(os.getenv("GEN_BATCH_POLL_JITTER_SECONDS", "0.25")),
                max_request_retries=int(os.getenv("GEN_BATCH_MAX_REQUEST_RETRIES", "3")),
                stale_in_progress_hours=int(os.getenv("GEN_BATCH_STALE_IN_PROGRESS_HOURS", "24")),
                completion_check_seconds=float(
                    os.getenv("GEN_BATCH_COMPLETION_CHECK_SECONDS", "2"),
                ),
                artifact_duration_seconds=int(
                    os.getenv("GEN_BATCH_ARTIFACT_DURATION_SECONDS", "8"),
                ),
                manifest_path=Path(os.getenv("GEN_BATCH_MANIFEST_PATH", "dist/manifest.json")),
            ),
            download=DownloadSettings(
                output_dir=Path(os.getenv("GEN_BATCH_OUTPUT_DIR", "dist/videos")),
                workers=int(os.getenv("GEN_BATCH_DOWNLOAD_WORKERS", "5")),
                max_attempts=int(os.getenv("GEN_BATCH_DOWNLOAD_MAX_ATTEMPTS", "3")),
                backoff_base_seconds=float(
                    os.getenv("GEN_BATCH_DOWNLOAD_BACKOFF_BASE_SECONDS", "1"),
                ),
                idle_wait_seconds=float(os.getenv("GEN_BATCH_DOWNLOAD_IDLE_WAIT_SECONDS", "1")),
                http_timeout_seconds=float(
                    os.getenv("GEN_BATCH_DOWNLOAD_HTTP_TIMEOUT_SECONDS", "60"),
                ),
                extension=os.getenv("GEN_BATCH_ARTIFACT_EXTENSION", "mp4").strip().lstrip("."),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values orchestration cannot run with."""

        orchestrator = self.orchestrator
        download = self.download
        positive = (
            ("GEN_BATCH_CONCURRENCY_CEILING", orchestrator.concurrency_ceiling),
            ("GEN_BATCH_REQUEST_TIMEOUT_SECONDS", orchestrator.request_timeout_seconds),
            ("GEN_BATCH_HEARTBEAT_SECONDS", orchestrator.heartbeat_seconds),
            ("GEN_BATCH_ACK_WAIT_SECONDS", orchestrator.ack_wait_seconds),
            ("GEN_BATCH_POLL_INTERVAL_SECONDS", orchestrator.poll_interval_seconds),
            ("GEN_BATCH_STALE_IN_PROGRESS_HOURS", orchestrator.stale_in_progress_hours),
            ("GEN_BATCH_COMPLETION_CHECK_SECONDS", orchestrator.completion_check_seconds),
            ("GEN_BATCH_ARTIFACT_DURATION_SECONDS", orchestrator.artifact_duration_seconds),
            ("GEN_BATCH_DOWNLOAD_WORKERS", download.workers),
            ("GEN_BATCH_DOWNLOAD_MAX_ATTEMPTS", download.max_attempts),
            ("GEN_BATCH_DOWNLOAD_IDLE_WAIT_SECONDS", download.idle_wait_seconds),
            ("GEN_BATCH_DOWNLOAD_HTTP_TIMEOUT_SECONDS", download.http_timeout_seconds),
            ("GEN_BATCH_SQLITE_BUSY_TIMEOUT_MS", self.sqlite_busy_timeout_ms),
        )
        for name, value in positive:
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if orchestrator.max_request_retries < 0:
            raise ValueError("GEN_BATCH_MAX_REQUEST_RETRIES must be >= 0.")
        if download.backoff_base_seconds < 0:
            raise ValueError("GEN_BATCH_DOWNLOAD_BACKOFF_BASE_SECONDS must be >= 0.")
        if orchestrator.poll_jitter_seconds < 0:
            raise ValueError("GEN_BATCH_POLL_JITTER_SECONDS must be >= 0.")
        if orchestrator.poll_jitter_seconds >= orchestrator.poll_interval_seconds:
            raise ValueError(
                "GEN_BATCH_POLL_JITTER_SECONDS must be smaller than "
                "GEN_BATCH_POLL_INTERVAL_SECONDS.",
            )
        if not download.extension:
            raise ValueError("GEN_BATCH_ARTIFACT_EXTENSION must not be empty.")
