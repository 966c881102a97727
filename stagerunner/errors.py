"""Error taxonomy for pipeline runs."""

from __future__ import annotations

from enum import StrEnum


class ErrorCategory(StrEnum):
    """Why a stage did not succeed. Drives the CLI exit code."""

    PROCESS = "process"
    CONFIG = "config"
    CREDENTIAL = "credential"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES: dict[ErrorCategory, int] = {
    ErrorCategory.PROCESS: 1,
    ErrorCategory.CONFIG: 2,
    ErrorCategory.CREDENTIAL: 3,
    ErrorCategory.TIMEOUT: 124,
    ErrorCategory.CANCELLED: 130,
}


class StageRunnerError(Exception):
    """Base class for all stagerunner errors."""


class ConfigError(StageRunnerError):
    """Raised when a pipeline definition cannot be loaded or validated."""


class CredentialNotFound(StageRunnerError):
    """Raised when a credential reference is not registered in the store."""

    def __init__(self, ref: str) -> None:
        self.ref = ref
        super().__init__(f"Credential '{ref}' is not registered")


class ProcessFailure(StageRunnerError):
    """A stage command exited with a non-zero status."""

    def __init__(self, argv0: str, returncode: int) -> None:
        self.argv0 = argv0
        self.returncode = returncode
        super().__init__(f"'{argv0}' exited with status {returncode}")


class StageTimeout(StageRunnerError):
    """A stage exceeded its configured timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Stage timed out after {timeout:g}s")


class ArtifactMissing(StageRunnerError):
    """Declared artifacts were not found after a stage completed.

    Carries the artifacts that *were* published so callers can still use them.
    """

    def __init__(self, stage: str, missing: dict[str, str], published: list | None = None) -> None:
        self.stage = stage
        self.missing = missing
        self.published = published or []
        details = ", ".join(f"{path} ({reason})" for path, reason in missing.items())
        super().__init__(f"Stage '{stage}' is missing artifacts: {details}")


class InvalidTransition(StageRunnerError):
    """Raised on an illegal stage status change."""
