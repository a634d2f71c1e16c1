# dsl.py
from __future__ import annotations

import inspect
import runpy
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .model import Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def infer_needs(fn: Callable[..., Any], params: Optional[Dict[str, Any]] = None) -> List[str]:
    """
    Upstream step names taken from the callable's signature.

    Every named parameter without a default is a dependency, except the ones
    supplied through `params`.
    """
    params = params or {}
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        # builtins without a signature take nothing from the plan
        return []

    needs: List[str] = []
    for p in sig.parameters.values():
        if p.kind in (p.VAR_POSITIONAL, p.VAR_KEYWORD, p.POSITIONAL_ONLY):
            continue
        if p.default is not p.empty or p.name in params:
            continue
        needs.append(p.name)
    return needs


def step(
    name: str,
    fn: Callable[..., Any],
    *,
    needs: Optional[Iterable[str]] = None,
    inputs: Optional[Iterable[str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> Step:
    """Create a step. Without `needs`, dependencies come from `fn`'s parameter names."""
    if not callable(fn):
        raise TypeError(f"step({name!r}) needs a callable, got {type(fn).__name__}")

    params = dict(params or {})
    if needs is None:
        needs = infer_needs(fn, params)

    return Step(
        name=name,
        fn=fn,
        needs=tuple(needs),
        inputs=tuple(inputs or ()),
        params=params,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StepBuilder:
    def __init__(self, name: str):
        self.name = name
        self._fn: Optional[Callable[..., Any]] = None
        self._needs: Optional[list[str]] = None
        self._inputs: list[str] = []
        self._params: dict[str, Any] = {}

    def compute(self, fn: Callable[..., Any]):
        self._fn = fn
        return self

    def depends_on(self, *step_names: str):
        if self._needs is None:
            self._needs = []
        self._needs.extend(step_names)
        return self

    def with_inputs(self, *paths: str):
        self._inputs.extend(paths)
        return self

    def with_params(self, **params: Any):
        self._params.update(params)
        return self

    def build(self) -> Step:
        if self._fn is None:
            raise ValueError(f"Step '{self.name}' has nothing to compute")
        return step(
            self.name,
            self._fn,
            needs=self._needs,
            inputs=self._inputs,
            params=self._params,
        )


def build(name: str) -> StepBuilder:
    """Convenience: build('fit').compute(fit).depends_on('train').build()"""
    return StepBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Expand one step template over a list of values.

    Example:
        matrix("model", ["logit", "forest"]).steps(
            lambda m: step(f"fit_{m}", fit, needs=["train"], params={"kind": m})
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def steps(self, builder: Callable[[Any], Step]) -> List[Step]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Plan helpers
# ---------------------------------------------------------------------

def plan(*items: Union[Step, Iterable[Step]]) -> List[Step]:
    """
    Flatten steps and lists of steps (e.g. matrix output) into one plan.

        PLAN = plan(
            step("raw", load_raw, inputs=["data/credit.csv"]),
            step("clean", clean),
            matrix(...).steps(...),
        )
    """
    out: List[Step] = []
    for item in items:
        if isinstance(item, Step):
            out.append(item)
        else:
            out.extend(item)
    return out


def load_plan(path: str | Path) -> List[Step]:
    """
    Load a plan from a python file path.

    The file must define either:
      - plan() -> List[Step]
      - PLAN = [Step, ...]
    """
    plan_path = Path(path).expanduser().resolve()
    if not plan_path.exists():
        raise FileNotFoundError(f"Plan file not found: {plan_path}")
    if plan_path.suffix != ".py":
        raise ValueError(f"Plan must be a .py file, got: {plan_path.name}")

    module_name = f"stepcache_plan_{plan_path.stem}"
    globals_dict = runpy.run_path(str(plan_path), run_name=module_name)

    steps = None
    if "PLAN" in globals_dict:
        steps = globals_dict["PLAN"]
    elif "plan" in globals_dict and callable(globals_dict["plan"]) and globals_dict["plan"] is not plan:
        steps = globals_dict["plan"]()

    if not isinstance(steps, list) or not all(isinstance(s, Step) for s in steps):
        raise TypeError(
            "Plan must return/define a List[Step]. "
            "Define plan() -> List[Step] or PLAN = [Step, ...]."
        )

    return steps
