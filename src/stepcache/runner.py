# runner.py
from __future__ import annotations

import logging
import os
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .dag import DependencyGraph, build_graph
from .errors import StepExecutionError
from .fingerprint import compute_fingerprints
from .model import BuildRecord, BuildReport, Step, StepState, StepStatus
from .store import Store, serialize
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

PlanLike = Union[DependencyGraph, Sequence[Step]]
EventHook = Callable[[str, StepState], None]


def as_graph(plan: PlanLike) -> DependencyGraph:
    if isinstance(plan, DependencyGraph):
        return plan
    return build_graph(plan)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

@dataclass
class StepOutcome:
    started_at: datetime
    duration: float
    size: int


def _build_step(
    step: Step,
    fingerprint: str,
    deps: List[Tuple[str, str]],
    store: Store,
) -> StepOutcome:
    """
    Runs in a worker thread. Dependencies are read from the store, never
    recomputed. Store errors on commit propagate unwrapped (they are fatal).
    """
    started_at = _utcnow()
    t0 = time.perf_counter()
    try:
        kwargs: Dict[str, Any] = {name: store.get(fp) for name, fp in deps}
        kwargs.update(step.params)
        value = step.fn(**kwargs)
        data = serialize(value)
    except Exception as e:
        raise StepExecutionError(step=step.name, fingerprint=fingerprint, cause=e) from e

    size = store.put_bytes(fingerprint, data)
    return StepOutcome(started_at=started_at, duration=time.perf_counter() - t0, size=size)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_plan(
    plan: PlanLike,
    store: Store,
    *,
    targets: Optional[Iterable[str]] = None,
    root: str | Path = ".",
    max_workers: int | None = None,
    fail_fast: bool = False,
    console: Optional[Console] = None,
    on_event: Optional[EventHook] = None,
) -> BuildReport:
    """
    Bring the selected steps up to date.

    - Selection is every step, or the upstream closure of `targets` (an
      empty list selects nothing).
    - Steps whose fingerprint is already stored are reported as cached.
    - Stale steps run on a thread pool as soon as all their dependencies
      have committed.
    - A failing step blocks its descendants only; unrelated branches keep
      going unless `fail_fast` is set (then unstarted steps are skipped).
    - Store errors stop scheduling, drain in-flight workers, persist the
      index and are re-raised.
    """
    graph = as_graph(plan)
    console = console or get_console()
    root_p = Path(root).resolve()

    if isinstance(targets, str):
        raise TypeError(f"targets must be a list of step names, got {targets!r}")
    if targets is not None:
        selected = graph.ancestors(graph.node(t) for t in targets)
    else:
        selected = set(range(len(graph)))

    fps = compute_fingerprints(graph, selected, root=root_p)
    index = store.load_index()
    report = BuildReport()

    def emit(i: int, state: StepState) -> None:
        if on_event is not None:
            on_event(graph.steps[i].name, state)

    def record(i: int, status: StepStatus, *, outcome: StepOutcome | None = None,
               error: BaseException | None = None) -> None:
        name = graph.steps[i].name
        fp = fps.values.get(i)
        report.results[name] = status
        if fp is not None:
            report.fingerprints[name] = fp
        if outcome is not None:
            report.durations[name] = outcome.duration
        if error is not None:
            report.errors[name] = error
        index.append(name, BuildRecord(
            fingerprint=fp,
            status=status,
            started_at=outcome.started_at if outcome else _utcnow(),
            duration=outcome.duration if outcome else 0.0,
            size=outcome.size if outcome else None,
            error=str(error) if error is not None else None,
            components=fps.components.get(i, {}),
        ))

    def fail(i: int, error: BaseException) -> None:
        record(i, StepStatus.FAILED, error=error)
        console.print_step_failed(graph.steps[i].name, str(error))
        emit(i, StepState.FAILED)
        for d in sorted(graph.descendants(i)):
            if d in selected and graph.steps[d].name not in report.results:
                record(d, StepStatus.BLOCKED)
                console.print_step_blocked(graph.steps[d].name, graph.steps[i].name)

    order = [i for i in graph.order if i in selected]
    stale_count = sum(1 for i in order if i in fps.values and not store.has(fps.values[i]))
    console.print_run_started(
        plan=f"{len(graph)} steps",
        step_count=len(order),
        stale_count=stale_count,
    )

    # ---- partition: cached / to-build ----
    pending: List[int] = []
    for i in order:
        if graph.steps[i].name in report.results:
            continue
        if i in fps.errors:
            fail(i, fps.errors[i])
        elif store.has(fps.values[i]):
            record(i, StepStatus.CACHED)
            console.print_step_cached(graph.steps[i].name)
        else:
            pending.append(i)

    # ---- build ----
    pending_set = set(pending)
    indeg = {i: sum(1 for d in graph.producers[i] if d in pending_set) for i in pending}
    ready = deque(i for i in pending if indeg[i] == 0)
    in_flight: Dict[Future, int] = {}
    stop = False
    fatal: BaseException | None = None

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    try:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            while ready or in_flight:
                # schedule all currently ready
                while ready and not stop:
                    i = ready.popleft()
                    deps = [(graph.steps[d].name, fps.values[d]) for d in graph.producers[i]]
                    fut = pool.submit(_build_step, graph.steps[i], fps.values[i], deps, store)
                    in_flight[fut] = i
                    emit(i, StepState.BUILDING)

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready steps
                fut = next(as_completed(list(in_flight.keys())))
                i = in_flight.pop(fut)

                try:
                    outcome = fut.result()
                except StepExecutionError as e:
                    fail(i, e)
                    if fail_fast:
                        stop = True
                    continue
                except Exception as e:
                    logger.error("store failure while committing %s: %s", graph.steps[i].name, e)
                    fail(i, e)
                    fatal = fatal or e
                    stop = True
                    continue

                record(i, StepStatus.BUILT, outcome=outcome)
                console.print_step_built(graph.steps[i].name, outcome.duration)
                emit(i, StepState.FRESH)

                # unlock consumers
                for nxt in graph.consumers[i]:
                    if nxt in indeg:
                        indeg[nxt] -= 1
                        if indeg[nxt] == 0 and graph.steps[nxt].name not in report.results:
                            ready.append(nxt)

        for i in pending:
            if graph.steps[i].name not in report.results:
                record(i, StepStatus.SKIPPED)
    finally:
        store.save_index(index)

    if fatal is not None:
        raise fatal

    report.results = {
        graph.steps[i].name: report.results[graph.steps[i].name]
        for i in order
        if graph.steps[i].name in report.results
    }
    return report


def _stale_reason(last: Optional[BuildRecord], fp: str, components: Dict[str, Any]) -> str:
    if last is None:
        return "never built"
    prev = last.components
    for key, label in (("code", "code changed"), ("inputs", "inputs changed"), ("params", "params changed")):
        if prev.get(key) != components[key]:
            return label

    prev_up = prev.get("upstream", {})
    cur_up = components["upstream"]
    changed = sorted(n for n in set(prev_up) | set(cur_up) if prev_up.get(n) != cur_up.get(n))
    if changed:
        return "upstream changed: " + ", ".join(changed)
    if last.fingerprint != fp:
        return "environment changed"
    return "missing from store"


def outdated(plan: PlanLike, store: Store, *, root: str | Path = ".") -> Dict[str, str]:
    """Names of steps that would be rebuilt, mapped to why, in build order."""
    graph = as_graph(plan)
    fps = compute_fingerprints(graph, root=root)
    index = store.load_index()

    reasons: Dict[str, str] = {}
    for i in graph.order:
        name = graph.steps[i].name
        if i in fps.errors:
            reasons[name] = str(fps.errors[i])
            continue
        fp = fps.values.get(i)
        if fp is None:
            reasons[name] = "upstream input missing"
            continue
        if store.has(fp):
            continue
        last = index.last(name, StepStatus.BUILT, StepStatus.CACHED)
        reasons[name] = _stale_reason(last, fp, fps.components[i])
    return reasons
