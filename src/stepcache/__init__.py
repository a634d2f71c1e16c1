from .dsl import step, matrix, plan, build, load_plan, StepBuilder
from .dag import build_graph, DependencyGraph
from .errors import (
    StepCacheError,
    CycleError,
    UnknownReferenceError,
    DuplicateStepError,
    ContentMismatchError,
    StepExecutionError,
    NotFoundError,
    MissingInputError,
)
from .model import Step, StepStatus, StepState, BuildReport
from .reader import Reader
from .runner import run_plan, outdated
from .store import Store

__all__ = [
    "step", "matrix", "plan", "build", "load_plan", "StepBuilder",
    "build_graph", "DependencyGraph",
    "StepCacheError", "CycleError", "UnknownReferenceError", "DuplicateStepError",
    "ContentMismatchError", "StepExecutionError", "NotFoundError", "MissingInputError",
    "Step", "StepStatus", "StepState", "BuildReport",
    "Reader", "run_plan", "outdated", "Store",
]
