"""Exception hierarchy shared across the BugScope pipeline."""

from __future__ import annotations


class BugScopeError(Exception):
    """Base class for all BugScope errors."""


class StageFailedError(BugScopeError):
    """A fatal pipeline stage (finding or explaining) could not complete."""

    def __init__(self, stage: str, message: str = ""):
        self.stage = stage
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"{stage} stage failed{detail}")


class StructuredOutputError(BugScopeError):
    """The model response could not be parsed into the requested schema."""


class LLMUnavailableError(BugScopeError):
    """The configured provider returned no response."""
