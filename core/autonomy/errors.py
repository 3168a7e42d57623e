"""Exception hierarchy for the autonomous execution engine."""

from __future__ import annotations


class AutonomyError(Exception):
    """Base class for all engine errors."""


class ExecutionFailedError(AutonomyError):
    """Raised when a task could not be executed after retries and fallback.

    The last underlying failure is chained as ``__cause__`` when the final
    attempt raised; ``last_error`` carries the error text either way.
    """

    def __init__(self, message: str, attempts: int = 0, last_error: str | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class ConfigError(AutonomyError):
    """Invalid configuration values or settings schema."""


class SettingsParseError(ConfigError):
    """Malformed settings document."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None):
        location = ""
        if line is not None:
            location = f" (line {line}" + (f", column {column}" if column is not None else "") + ")"
        super().__init__(f"{message}{location}")
        self.line = line
        self.column = column


class OracleError(AutonomyError):
    """The oracle verifier could not produce a verdict."""


class CheckpointError(AutonomyError):
    """A checkpoint could not be restored."""
