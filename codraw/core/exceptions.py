"""
Application-level exception types.

Domain-specific exceptions for the co-drawing engine so call sites can
separate guard failures, transient remote failures, cancellation and
resource failures.
"""

from __future__ import annotations


class AppError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        self.detail = detail or message
        super().__init__(message)


class GenerationError(AppError):
    """Raised when the remote classify/generate call fails."""


class GenerationCancelledError(AppError):
    """Raised inside the pipeline when its cancellation token was invalidated.

    Cancellation is not a failure; callers translate it into a silent
    return to idle.
    """

    def __init__(self, message: str = "generation cancelled") -> None:
        super().__init__(message)


class ImageDecodeError(AppError):
    """Raised when generated image bytes cannot be fully decoded."""


class WorkspaceAnalysisError(AppError):
    """Raised when the workspace-analysis capability fails."""


class TranscriptionError(AppError):
    """Raised when speech-to-text fails."""


class VoiceSessionError(AppError):
    """Raised for voice session resource failures (audio, transport)."""


class ToolExecutionError(AppError):
    """Raised when a voice tool call cannot be serviced."""


class PersistenceError(AppError):
    """Raised when saving board state fails."""


class StatementTimeoutError(PersistenceError):
    """Raised when the store aborted a save with a server-side statement timeout."""


class ConfigurationError(AppError):
    """Raised when required configuration is missing or invalid."""


class EntityNotFoundError(AppError):
    """Raised when a database entity cannot be found."""

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            detail=f"{entity_type} not found",
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
