# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


@dataclass(frozen=True, eq=False)
class Step:
    """
    A named unit of work in a plan.

    `fn` is called with one keyword argument per upstream step (named after
    that step) plus the declared `params`.
    """
    name: str
    fn: Callable[..., Any]
    needs: Tuple[str, ...] = ()

    # External inputs that take part in the fingerprint
    inputs: Tuple[str, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)


class StepStatus(str, Enum):
    """Outcome of a step in one run."""
    BUILT = "built"
    CACHED = "cached"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class StepState(str, Enum):
    """State of a step relative to the store."""
    STALE = "stale"
    FRESH = "fresh"
    BUILDING = "building"
    FAILED = "failed"


# ----------------------------------------------------------------------
# Metadata index (persisted as index.json next to the blobs)
# ----------------------------------------------------------------------

class BuildRecord(BaseModel):
    fingerprint: Optional[str] = None
    status: StepStatus
    started_at: datetime
    duration: float = 0.0
    size: Optional[int] = None
    error: Optional[str] = None
    # code / inputs / params hashes and {dep: fingerprint}, for explaining staleness
    components: Dict[str, Any] = Field(default_factory=dict)


class StepIndex(BaseModel):
    fingerprint: Optional[str] = None  # last fingerprint known to be in the store
    records: List[BuildRecord] = Field(default_factory=list)


class BuildIndex(BaseModel):
    version: int = 1
    steps: Dict[str, StepIndex] = Field(default_factory=dict)

    def append(self, name: str, record: BuildRecord) -> None:
        entry = self.steps.setdefault(name, StepIndex())
        entry.records.append(record)
        if record.status in (StepStatus.BUILT, StepStatus.CACHED):
            entry.fingerprint = record.fingerprint

    def last(self, name: str, *statuses: StepStatus) -> Optional[BuildRecord]:
        entry = self.steps.get(name)
        if entry is None:
            return None
        for record in reversed(entry.records):
            if not statuses or record.status in statuses:
                return record
        return None


# ----------------------------------------------------------------------
# Run report
# ----------------------------------------------------------------------

@dataclass
class BuildReport:
    results: Dict[str, StepStatus] = field(default_factory=dict)
    fingerprints: Dict[str, str] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, BaseException] = field(default_factory=dict)

    def _with(self, status: StepStatus) -> List[str]:
        return [name for name, s in self.results.items() if s == status]

    @property
    def built(self) -> List[str]:
        return self._with(StepStatus.BUILT)

    @property
    def cached(self) -> List[str]:
        return self._with(StepStatus.CACHED)

    @property
    def failed(self) -> List[str]:
        return self._with(StepStatus.FAILED)

    @property
    def blocked(self) -> List[str]:
        return self._with(StepStatus.BLOCKED)

    @property
    def skipped(self) -> List[str]:
        return self._with(StepStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return all(s in (StepStatus.BUILT, StepStatus.CACHED) for s in self.results.values())
