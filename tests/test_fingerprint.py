"""
Fingerprint engine tests: determinism, normalization, propagation.
"""
from __future__ import annotations

import functools

import pytest

from stepcache.dag import build_graph
from stepcache.dsl import step
from stepcache.errors import MissingInputError
from stepcache.fingerprint import code_hash, compute_fingerprints, fingerprint, inputs_hash, params_hash


def plain(x):
    return x + 1


def commented(x):
    # add one
    return x + 1  # same thing


def plus_two(x):
    return x + 2


def make_adder(n):
    return lambda x: x + n


def _by_name(graph, fps):
    return {graph.steps[i].name: fp for i, fp in fps.values.items()}


# --------------------------------------------------------------------------
# Code hashing
# --------------------------------------------------------------------------

def test_code_hash_is_deterministic():
    assert code_hash(plain) == code_hash(plain)


def test_comments_do_not_change_code_hash():
    assert code_hash(plain) == code_hash(commented)


def test_constant_change_changes_code_hash():
    assert code_hash(plain) != code_hash(plus_two)
    assert code_hash(lambda: 5) != code_hash(lambda: 7)


def test_closure_values_participate():
    assert code_hash(make_adder(1)) == code_hash(make_adder(1))
    assert code_hash(make_adder(1)) != code_hash(make_adder(2))


def test_partial_arguments_participate():
    assert code_hash(functools.partial(plain, 1)) != code_hash(functools.partial(plain, 2))


def test_helper_function_changes_propagate():
    ns = {"__name__": "plan_ns"}
    exec("def helper(x):\n    return x + 1\n\ndef main(x):\n    return helper(x)\n", ns)
    before = code_hash(ns["main"])
    exec("def helper(x):\n    return x + 2\n", ns)
    assert code_hash(ns["main"]) != before


def test_module_constants_participate():
    ns = {"__name__": "plan_ns"}
    exec("import math\n\nTHRESHOLD = 0.5\n\ndef flag(score):\n    return score > THRESHOLD * math.pi\n", ns)
    before = code_hash(ns["flag"])
    assert code_hash(ns["flag"]) == before
    ns["THRESHOLD"] = 0.7
    assert code_hash(ns["flag"]) != before


def test_config_dict_changes_propagate():
    ns = {"__name__": "plan_ns"}
    exec("CONFIG = {'depth': 3}\n\ndef fit():\n    return CONFIG['depth']\n", ns)
    before = code_hash(ns["fit"])
    ns["CONFIG"]["depth"] = 4
    assert code_hash(ns["fit"]) != before


def test_mutually_recursive_helpers_terminate():
    ns = {"__name__": "plan_ns"}
    exec(
        "def even(n):\n    return True if n == 0 else odd(n - 1)\n\n"
        "def odd(n):\n    return False if n == 0 else even(n - 1)\n",
        ns,
    )
    assert code_hash(ns["even"]) == code_hash(ns["even"])


# --------------------------------------------------------------------------
# Inputs and params
# --------------------------------------------------------------------------

def test_inputs_hash_follows_file_content(tmp_path):
    data = tmp_path / "credit.csv"
    data.write_text("id,default\n1,0\n")
    first = inputs_hash(["credit.csv"], tmp_path)
    assert inputs_hash(["credit.csv"], tmp_path) == first
    data.write_text("id,default\n1,1\n")
    assert inputs_hash(["credit.csv"], tmp_path) != first


def test_inputs_hash_covers_directories_and_globs(tmp_path):
    (tmp_path / "data").mkdir()
    (tmp_path / "data" / "a.csv").write_text("a")
    (tmp_path / "data" / "b.csv").write_text("b")
    by_dir = inputs_hash(["data"], tmp_path)
    by_glob = inputs_hash(["data/*.csv"], tmp_path)
    assert by_dir == by_glob
    (tmp_path / "data" / "b.csv").write_text("changed")
    assert inputs_hash(["data"], tmp_path) != by_dir


def test_absolute_inputs_resolve_outside_root(tmp_path):
    data = tmp_path / "data"
    data.mkdir()
    (data / "a.csv").write_text("a")
    root = tmp_path / "project"
    root.mkdir()
    assert inputs_hash([str(data / "*.csv")], root) == inputs_hash([str(data / "a.csv")], root)
    with pytest.raises(MissingInputError):
        inputs_hash([str(tmp_path / "nope" / "*.csv")], root)


def test_missing_input_raises(tmp_path):
    with pytest.raises(MissingInputError) as exc:
        inputs_hash(["nope.csv"], tmp_path, step="raw")
    assert exc.value.key == "nope.csv"
    assert exc.value.step == "raw"


def test_params_hash_ignores_insertion_order():
    assert params_hash({"a": 1, "b": [1, 2]}) == params_hash({"b": [1, 2], "a": 1})
    assert params_hash({"a": 1}) != params_hash({"a": 2})


# --------------------------------------------------------------------------
# Step fingerprints
# --------------------------------------------------------------------------

def test_fingerprint_components(tmp_path):
    s = step("doubled", lambda raw: raw * 2)
    fp, components = fingerprint(s, [("raw", "abc")], root=tmp_path)
    assert len(fp) == 64
    assert components["upstream"] == {"raw": "abc"}
    assert fingerprint(s, [("raw", "abc")], root=tmp_path)[0] == fp
    assert fingerprint(s, [("raw", "abd")], root=tmp_path)[0] != fp
    assert fingerprint(s, [("raw", "abc")], root=tmp_path, salt="other")[0] != fp


def test_upstream_change_propagates_to_all_descendants(tmp_path):
    def plan_with(raw_fn):
        return build_graph([
            step("raw", raw_fn),
            step("doubled", lambda raw: raw * 2),
            step("quadrupled", lambda doubled: doubled * 2),
            step("other", lambda: "unrelated"),
        ])

    g1 = plan_with(lambda: 5)
    g2 = plan_with(lambda: 7)
    before = _by_name(g1, compute_fingerprints(g1, root=tmp_path))
    after = _by_name(g2, compute_fingerprints(g2, root=tmp_path))

    for name in ("raw", "doubled", "quadrupled"):
        assert before[name] != after[name]
    assert before["other"] == after["other"]


def test_missing_input_leaves_descendants_unfingerprinted(tmp_path):
    g = build_graph([
        step("raw", lambda: 1, inputs=["missing.csv"]),
        step("clean", lambda raw: raw),
        step("other", lambda: 2),
    ])
    fps = compute_fingerprints(g, root=tmp_path)
    assert isinstance(fps.errors[g.node("raw")], MissingInputError)
    assert g.node("clean") not in fps.values
    assert g.node("other") in fps.values
