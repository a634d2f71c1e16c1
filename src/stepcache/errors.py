# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class StepCacheError(Exception):
    """Base class for every error raised by stepcache."""


# ----------------------------------------------------------------------
# Graph-build time (fatal, raised before any step runs)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class CycleError(StepCacheError):
    """The plan contains a dependency cycle. `cycle` starts and ends on the same step."""
    cycle: List[str]

    def __str__(self) -> str:
        return "Dependency cycle: " + " -> ".join(self.cycle)


@dataclass(eq=False)
class UnknownReferenceError(StepCacheError):
    step: str
    missing: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Step '{self.step}' needs unknown step '{self.missing}'. "
            f"Known steps: {sorted(self.known)}"
        )


@dataclass(eq=False)
class DuplicateStepError(StepCacheError):
    names: List[str]

    def __str__(self) -> str:
        return f"Duplicate step names found: {self.names}"


# ----------------------------------------------------------------------
# Store integrity (fatal, aborts the run)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ContentMismatchError(StepCacheError):
    """A fingerprint was written twice with different bytes."""
    fingerprint: str
    existing_size: int
    new_size: int

    def __str__(self) -> str:
        return (
            f"Content mismatch for {self.fingerprint[:12]}...: stored entry has "
            f"{self.existing_size} bytes, refusing to overwrite with "
            f"{self.new_size} different bytes"
        )


# ----------------------------------------------------------------------
# Per-step runtime errors (isolated to the step's subtree)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepExecutionError(StepCacheError):
    step: str
    fingerprint: str | None
    cause: BaseException

    def __str__(self) -> str:
        return f"Step '{self.step}' failed: {type(self.cause).__name__}: {self.cause}"


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------

@dataclass(eq=False)
class NotFoundError(StepCacheError):
    key: str
    reason: str = ""

    def __str__(self) -> str:
        if self.reason:
            return f"Not found: {self.key} ({self.reason})"
        return f"Not found: {self.key}"


@dataclass(eq=False)
class MissingInputError(NotFoundError):
    """A declared external input (file or directory) does not exist."""
    step: str = ""

    def __str__(self) -> str:
        return f"Step '{self.step}' declares missing input: {self.key}"
