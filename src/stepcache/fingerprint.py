# fingerprint.py
from __future__ import annotations

import functools
import hashlib
import json
import logging
import sys
import types
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import joblib

from .dag import DependencyGraph
from .errors import MissingInputError, StepCacheError, StepExecutionError
from .model import Step

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# fingerprint = hash(
#     format version,
#     step name,
#     normalized code of step.fn (bytecode, constants, closures, helpers),
#     [(dep name, dep fingerprint), ...] in declaration order,
#     contents of declared input files/dirs,
#     declared params,
#     environment salt (python version)
# )
#
# Any ancestor change changes a dep fingerprint, which changes ours.
# ---------------------------------------------------------------------

FORMAT_VERSION = 1
CHUNK = 1024 * 1024


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def environment_salt() -> str:
    # bytecode differs across interpreter versions
    return f"python-{sys.version_info.major}.{sys.version_info.minor}"


# ---------------------------------------------------------------------
# Code hashing
# ---------------------------------------------------------------------

def _const_repr(value: Any, seen: Set[int]) -> Any:
    if isinstance(value, types.CodeType):
        return _code_repr(value, seen)
    if isinstance(value, frozenset):
        # set iteration order depends on string hash randomization
        return sorted(repr(v) for v in value)
    if isinstance(value, tuple):
        return [_const_repr(v, seen) for v in value]
    return repr(value)


def _code_repr(code: types.CodeType, seen: Set[int]) -> Dict[str, Any]:
    return {
        "code": code.co_code.hex(),
        "consts": [_const_repr(c, seen) for c in code.co_consts],
        "names": list(code.co_names),
        "varnames": list(code.co_varnames),
        "argcount": code.co_argcount,
        "kwonly": code.co_kwonlyargcount,
    }


def _global_names(code: types.CodeType) -> List[str]:
    names = list(code.co_names)
    for c in code.co_consts:
        if isinstance(c, types.CodeType):
            names.extend(_global_names(c))
    return names


def _value_hash(value: Any, seen: Set[int]) -> str:
    if callable(value) and not isinstance(value, type):
        return code_hash(value, _seen=seen)
    return joblib.hash(value)


def code_hash(fn: Callable[..., Any], *, _seen: Optional[Set[int]] = None) -> str:
    """
    Hash a callable by what it does, not by where it lives.

    Comments, whitespace and line numbers do not change the hash. Defaults,
    closure values, module-level helper functions it calls and module-level
    values it reads do.
    """
    seen = set() if _seen is None else _seen

    if isinstance(fn, functools.partial):
        payload = {
            "partial": code_hash(fn.func, _seen=seen),
            "args": [_value_hash(a, seen) for a in fn.args],
            "keywords": {k: _value_hash(v, seen) for k, v in fn.keywords.items()},
        }
        return _sha256_str(_json_dumps_stable(payload))

    if not isinstance(fn, types.FunctionType):
        # builtins, bound methods, callable objects: pickled by joblib
        return joblib.hash(fn)

    if id(fn) in seen:
        # recursion between helpers
        return _sha256_str(f"recursive:{fn.__module__}.{fn.__qualname__}")
    seen.add(id(fn))

    code = fn.__code__
    closure: List[str] = []
    for name, cell in zip(code.co_freevars, fn.__closure__ or ()):
        try:
            contents = cell.cell_contents
        except ValueError:
            closure.append(f"{name}:<empty>")
            continue
        closure.append(f"{name}:{_value_hash(contents, seen)}")

    helpers: Dict[str, str] = {}
    data: Dict[str, str] = {}
    for name in sorted(set(_global_names(code))):
        if name not in fn.__globals__:
            continue
        obj = fn.__globals__[name]
        if isinstance(obj, types.FunctionType):
            if obj.__module__ == fn.__module__:
                helpers[name] = code_hash(obj, _seen=seen)
        elif not (isinstance(obj, (types.ModuleType, type)) or callable(obj)):
            # module-level constants, thresholds, config dicts
            data[name] = joblib.hash(obj)

    payload = {
        "fn": _code_repr(code, seen),
        "defaults": joblib.hash(fn.__defaults__),
        "kwdefaults": joblib.hash(fn.__kwdefaults__),
        "closure": closure,
        "helpers": helpers,
        "globals": data,
    }
    return _sha256_str(_json_dumps_stable(payload))


# ---------------------------------------------------------------------
# External inputs
# ---------------------------------------------------------------------

def _relpath(p: Path, root: Path) -> str:
    try:
        return p.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return p.resolve().as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(CHUNK)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_input(root: Path, pattern: str) -> List[Path]:
    p = root / pattern
    if p.exists():
        return [p]
    base = root
    if Path(pattern).is_absolute():
        # Path.glob only takes relative patterns
        base = Path(Path(pattern).anchor)
        pattern = str(Path(pattern).relative_to(base))
    try:
        return sorted(m for m in base.glob(pattern) if m.exists())
    except (ValueError, NotImplementedError):
        # e.g. empty glob pattern
        return []


def inputs_hash(paths: Sequence[str], root: str | Path = ".", *, step: str = "") -> str:
    """
    Hash declared input files/dirs deterministically (relative path + content digest).

    Raises MissingInputError when a declared input matches nothing.
    """
    root_p = Path(root).resolve()
    file_fps: List[Tuple[str, str]] = []

    for pattern in paths:
        matches = _resolve_input(root_p, pattern)
        if not matches:
            raise MissingInputError(key=pattern, step=step)
        for p in matches:
            files = [p] if p.is_file() else list(_iter_files_under(p))
            for f in files:
                file_fps.append((_relpath(f, root_p), _hash_file_contents(f)))

    file_fps = sorted(set(file_fps))
    return _sha256_str(_json_dumps_stable(file_fps))


def params_hash(params: Dict[str, Any]) -> str:
    # joblib hashes dicts independently of insertion order
    return joblib.hash(dict(params))


# ---------------------------------------------------------------------
# Step fingerprints
# ---------------------------------------------------------------------

def fingerprint(
    step: Step,
    upstream: Sequence[Tuple[str, str]],
    *,
    root: str | Path = ".",
    salt: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Returns (fingerprint, components) where components can be stored to
    explain later why a step went stale.
    """
    components = {
        "code": code_hash(step.fn),
        "inputs": inputs_hash(step.inputs, root, step=step.name),
        "params": params_hash(step.params),
        "upstream": {name: fp for name, fp in upstream},
    }
    payload = {
        "v": FORMAT_VERSION,  # bump this if you change hashing format
        "step": step.name,
        "code": components["code"],
        "upstream": [[name, fp] for name, fp in upstream],
        "inputs": components["inputs"],
        "params": components["params"],
        "salt": salt if salt is not None else environment_salt(),
    }
    return _sha256_str(_json_dumps_stable(payload)), components


@dataclass
class Fingerprints:
    """Fingerprints of one pass over (part of) a graph, keyed by node id."""
    values: Dict[int, str] = field(default_factory=dict)
    components: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    errors: Dict[int, Exception] = field(default_factory=dict)


def compute_fingerprints(
    graph: DependencyGraph,
    selected: Optional[Iterable[int]] = None,
    *,
    root: str | Path = ".",
) -> Fingerprints:
    """
    Fingerprint `selected` steps (default: all) in topological order.

    `selected` must be closed under ancestors. A step that cannot be
    fingerprinted (missing input, unpicklable value) lands in `errors`; its
    descendants get no fingerprint at all.
    """
    chosen = set(range(len(graph))) if selected is None else set(selected)
    out = Fingerprints()

    for i in graph.order:
        if i not in chosen:
            continue
        deps = graph.producers[i]
        if any(d not in out.values for d in deps):
            continue

        step = graph.steps[i]
        upstream = [(graph.steps[d].name, out.values[d]) for d in deps]
        try:
            fp, components = fingerprint(step, upstream, root=root)
        except StepCacheError as e:
            logger.debug("cannot fingerprint %s: %s", step.name, e)
            out.errors[i] = e
            continue
        except Exception as e:
            # unpicklable closures, params or globals; unreadable inputs
            logger.debug("cannot fingerprint %s: %s", step.name, e)
            out.errors[i] = StepExecutionError(step=step.name, fingerprint=None, cause=e)
            continue
        out.values[i] = fp
        out.components[i] = components

    return out
