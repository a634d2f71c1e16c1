# reader.py
from __future__ import annotations

import inspect
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, MutableMapping, Optional, Set

from .errors import NotFoundError
from .fingerprint import compute_fingerprints
from .model import BuildReport, StepState, StepStatus
from .runner import PlanLike, as_graph, outdated, run_plan
from .settings import STORE_DIR, WORKERS
from .store import Store
from .ui.console import Console


class Reader:
    """
    Entry point handed to notebooks and scripts.

        reader = Reader(PLAN, Store(".stepcache"))
        reader.make()
        model = reader.read("best_model")

    Every read resolves the step's current fingerprint first, so a stale
    value is never returned: a miss builds the minimal upstream subgraph.
    """

    def __init__(
        self,
        plan: PlanLike,
        store: Store | str | Path | None = None,
        *,
        root: str | Path = ".",
        max_workers: int | None = WORKERS,
        console: Optional[Console] = None,
    ):
        self.graph = as_graph(plan)
        self.store = store if isinstance(store, Store) else Store(store or STORE_DIR)
        self.root = Path(root).resolve()
        self.max_workers = max_workers
        self.console = console

        self._building: Set[str] = set()
        self._lock = threading.Lock()

    def _on_event(self, name: str, state: StepState) -> None:
        with self._lock:
            if state == StepState.BUILDING:
                self._building.add(name)
            else:
                self._building.discard(name)

    def make(self, targets: Optional[Iterable[str]] = None, *, fail_fast: bool = False) -> BuildReport:
        """Build `targets` (and what they need), or the whole plan."""
        return run_plan(
            self.graph,
            self.store,
            targets=targets,
            root=self.root,
            max_workers=self.max_workers,
            fail_fast=fail_fast,
            console=self.console,
            on_event=self._on_event,
        )

    def read(self, name: str) -> Any:
        i = self.graph.node(name)
        fps = compute_fingerprints(self.graph, self.graph.ancestors([i]), root=self.root)
        fp = fps.values.get(i)
        if fp is not None and self.store.has(fp):
            return self.store.get(fp)

        report = self.make([name])
        status = report.results.get(name)
        if status in (StepStatus.BUILT, StepStatus.CACHED):
            return self.store.get(report.fingerprints[name])
        if status == StepStatus.FAILED:
            raise report.errors[name]

        culprits = sorted(report.failed)
        raise NotFoundError(name, reason=f"blocked by failed upstream step(s): {', '.join(culprits)}")

    def load(self, *names: str, namespace: Optional[MutableMapping[str, Any]] = None) -> None:
        """
        Read each step and bind it under its own name in `namespace`
        (the caller's globals when omitted).
        """
        if namespace is None:
            frame = inspect.currentframe()
            try:
                namespace = frame.f_back.f_globals
            finally:
                del frame
        for name in names:
            namespace[name] = self.read(name)

    # ---- introspection ----

    def outdated(self) -> Dict[str, str]:
        return outdated(self.graph, self.store, root=self.root)

    def progress(self) -> Dict[str, StepState]:
        fps = compute_fingerprints(self.graph, root=self.root)
        index = self.store.load_index()
        with self._lock:
            building = set(self._building)

        states: Dict[str, StepState] = {}
        for i in self.graph.order:
            name = self.graph.steps[i].name
            fp = fps.values.get(i)
            last = index.last(name)
            if name in building:
                states[name] = StepState.BUILDING
            elif fp is not None and self.store.has(fp):
                states[name] = StepState.FRESH
            elif i in fps.errors or (last is not None and last.status == StepStatus.FAILED and last.fingerprint == fp):
                states[name] = StepState.FAILED
            else:
                states[name] = StepState.STALE
        return states

    def cached(self) -> List[str]:
        fps = compute_fingerprints(self.graph, root=self.root)
        return [
            self.graph.steps[i].name
            for i in self.graph.order
            if i in fps.values and self.store.has(fps.values[i])
        ]

    def build_times(self) -> Dict[str, float]:
        index = self.store.load_index()
        times: Dict[str, float] = {}
        for name in self.graph.names:
            last = index.last(name, StepStatus.BUILT)
            if last is not None:
                times[name] = last.duration
        return times

    def diagnose(self, name: str) -> Optional[str]:
        """Error message of the step's most recent failure, if any."""
        self.graph.node(name)
        last = self.store.load_index().last(name, StepStatus.FAILED)
        return last.error if last is not None else None

    def prune(self) -> List[str]:
        """Drop blobs that no step of the current plan points to."""
        fps = compute_fingerprints(self.graph, root=self.root)
        return self.store.prune(fps.values.values())
