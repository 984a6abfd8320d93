"""Error taxonomy for orchestration failures."""

from __future__ import annotations


class TransientInteractionFailure(RuntimeError):
    """Triggering a submission failed while the driving session is still alive."""


class FatalSessionFailure(RuntimeError):
    """The driving session is gone; orchestration cannot continue."""


class PersistenceFailure(RuntimeError):
    """A store operation failed; never retried silently."""


class DownloadError(RuntimeError):
    """Artifact fetch failed."""


class LocatorExpired(DownloadError):
    """The artifact locator was rejected as expired or unauthorized."""


class ArtifactRedirect(DownloadError):
    """The locator answered with a redirect to another location."""

    def __init__(self, location: str) -> None:
        super().__init__(f"Redirected to {location}")
        self.location = location


class OrchestrationHalted(RuntimeError):
    """Orchestration stopped on a system-level fault."""

    def __init__(self, message: str, *, cause: BaseException) -> None:
        super().__init__(message)
        self.cause = cause
