"""Exception types raised by the pipeline."""

from __future__ import annotations


class HccError(Exception):
    """Base class for pipeline errors."""


class ProviderError(HccError):
    """A text-completion call failed."""

    def __init__(self, status: int | None, message: str) -> None:
        super().__init__(message if status is None else f"[{status}] {message}")
        self.status = status
        self.message = message


class StageError(HccError):
    """A pipeline stage failed; the job records ``str(self)``."""

    def __init__(self, stage: str, detail: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {detail}")
        self.stage = stage
        self.detail = detail


class JobNotFoundError(HccError, KeyError):
    def __str__(self) -> str:
        return f"Job not found: {self.args[0] if self.args else '?'}"


class JobCancelled(HccError):
    """Raised between chunks or stages once a cancellation was requested."""
