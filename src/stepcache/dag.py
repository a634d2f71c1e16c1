# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from .errors import CycleError, DuplicateStepError, NotFoundError, UnknownReferenceError
from .model import Step

WHITE, GRAY, BLACK = 0, 1, 2


@dataclass
class DependencyGraph:
    """
    Steps resolved to integer node ids.

    producers[i]: ids step i needs (in declaration order)
    consumers[i]: ids that need step i
    order:        topological order, dependencies first
    """
    steps: List[Step]
    index: Dict[str, int]
    producers: List[Tuple[int, ...]]
    consumers: List[Tuple[int, ...]]
    order: List[int]

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.steps]

    def node(self, name: str) -> int:
        try:
            return self.index[name]
        except KeyError:
            raise NotFoundError(name, reason="no such step in the plan") from None

    def ancestors(self, roots: Iterable[int]) -> Set[int]:
        """Upstream closure of `roots`, including the roots themselves."""
        seen: Set[int] = set()
        stack = list(roots)
        while stack:
            i = stack.pop()
            if i in seen:
                continue
            seen.add(i)
            stack.extend(self.producers[i])
        return seen

    def descendants(self, root: int) -> Set[int]:
        """Every step that transitively needs `root` (excluding `root`)."""
        seen: Set[int] = set()
        stack = list(self.consumers[root])
        while stack:
            i = stack.pop()
            if i in seen:
                continue
            seen.add(i)
            stack.extend(self.consumers[i])
        return seen

    def topo_levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Steps within a stage are independent of each other.
        """
        indeg = [len(p) for p in self.producers]
        q = deque(i for i in range(len(self.steps)) if indeg[i] == 0)

        levels: List[List[str]] = []
        while q:
            level: List[str] = []
            for _ in range(len(q)):
                i = q.popleft()
                level.append(self.steps[i].name)
                for child in self.consumers[i]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels


def build_graph(steps: Sequence[Step]) -> DependencyGraph:
    """
    Build a DAG from Step objects.

    Requires:
      - step.name: str (unique)
      - step.needs: names of steps that must be built BEFORE this step

    Raises DuplicateStepError, UnknownReferenceError or CycleError before
    anything runs.
    """
    steps = list(steps)
    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateStepError(dupes)

    index = {name: i for i, name in enumerate(names)}
    producers: List[Tuple[int, ...]] = []
    consumers: List[List[int]] = [[] for _ in steps]

    for i, s in enumerate(steps):
        deps: List[int] = []
        for need in s.needs:
            if need not in index:
                raise UnknownReferenceError(step=s.name, missing=need, known=names)
            j = index[need]
            if j not in deps:
                deps.append(j)
                consumers[j].append(i)
        producers.append(tuple(deps))

    order = _topological_order(names, producers)
    return DependencyGraph(
        steps=steps,
        index=index,
        producers=producers,
        consumers=[tuple(c) for c in consumers],
        order=order,
    )


def _topological_order(names: List[str], producers: List[Tuple[int, ...]]) -> List[int]:
    # Iterative DFS from consumer to producer; post-order puts producers first.
    color = [WHITE] * len(names)
    order: List[int] = []

    for root in range(len(names)):
        if color[root] != WHITE:
            continue
        color[root] = GRAY
        stack = [(root, iter(producers[root]))]
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                if color[dep] == WHITE:
                    color[dep] = GRAY
                    stack.append((dep, iter(producers[dep])))
                    break
                if color[dep] == GRAY:
                    path = [n for n, _ in stack]
                    cycle = path[path.index(dep):] + [dep]
                    raise CycleError([names[n] for n in cycle])
            else:
                color[node] = BLACK
                order.append(node)
                stack.pop()

    return order
