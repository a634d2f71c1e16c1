"""
Reader API tests: read/load semantics, staleness, introspection.
"""
from __future__ import annotations

import pytest

import tracking
from stepcache.dsl import step
from stepcache.errors import MissingInputError, NotFoundError, StepExecutionError
from stepcache.model import StepState
from stepcache.reader import Reader

@pytest.fixture(autouse=True)
def _reset_calls():
    tracking.CALLS.clear()
    yield
    tracking.CALLS.clear()


def make_raw(x):
    tracking.CALLS.append("raw")
    return x


def doubled(raw):
    tracking.CALLS.append("doubled")
    return raw * 2


def tripled(raw):
    tracking.CALLS.append("tripled")
    return raw * 3


def broken(raw):
    raise RuntimeError("model did not converge")


def scenario(x=5):
    return [
        step("raw", make_raw, params={"x": x}),
        step("doubled", doubled),
        step("tripled", tripled),
    ]


@pytest.fixture()
def reader(store, tmp_path):
    return Reader(scenario(), store, root=tmp_path)


# --------------------------------------------------------------------------
# read / load
# --------------------------------------------------------------------------

def test_concrete_scenario(store, tmp_path):
    first = Reader(scenario(5), store, root=tmp_path)
    assert first.make().built == ["raw", "doubled", "tripled"]
    assert first.read("doubled") == 10
    assert first.read("tripled") == 15

    tracking.CALLS.clear()
    again = Reader(scenario(5), store, root=tmp_path)
    assert again.make().cached == ["raw", "doubled", "tripled"]
    assert again.read("doubled") == 10
    assert again.read("tripled") == 15
    assert tracking.CALLS == []

    changed = Reader(scenario(7), store, root=tmp_path)
    assert changed.make().built == ["raw", "doubled", "tripled"]
    assert changed.read("doubled") == 14
    assert changed.read("tripled") == 21


def test_read_builds_only_what_is_needed(reader):
    assert reader.read("doubled") == 10
    assert sorted(tracking.CALLS) == ["doubled", "raw"]


def test_read_hit_does_not_execute(reader):
    reader.make()
    tracking.CALLS.clear()
    assert reader.read("tripled") == 15
    assert tracking.CALLS == []


def test_read_never_serves_stale_values(store, tmp_path):
    Reader(scenario(5), store, root=tmp_path).make()
    # old objects are still in the store, but the plan now implies x=7
    assert Reader(scenario(7), store, root=tmp_path).read("doubled") == 14


def test_read_unknown_name(reader):
    with pytest.raises(NotFoundError):
        reader.read("nope")


def test_read_failed_step_raises_its_error(store, tmp_path):
    r = Reader(scenario() + [step("model", broken)], store, root=tmp_path)
    with pytest.raises(StepExecutionError) as exc:
        r.read("model")
    assert "did not converge" in str(exc.value)


def test_read_blocked_step_raises_not_found(store, tmp_path):
    plan = scenario() + [step("model", broken), step("report", lambda model: model)]
    r = Reader(plan, store, root=tmp_path)
    with pytest.raises(NotFoundError) as exc:
        r.read("report")
    assert "model" in str(exc.value)


def test_read_missing_source_file(store, tmp_path):
    r = Reader([step("raw", lambda: 1, inputs=["credit.csv"])], store, root=tmp_path)
    with pytest.raises(MissingInputError):
        r.read("raw")


def test_load_into_namespace(reader):
    ns = {}
    reader.load("doubled", "tripled", namespace=ns)
    assert ns == {"doubled": 10, "tripled": 15}


def test_load_defaults_to_caller_globals(reader):
    try:
        reader.load("raw")
        assert globals()["raw"] == 5
    finally:
        globals().pop("raw", None)


# --------------------------------------------------------------------------
# Introspection
# --------------------------------------------------------------------------

def test_progress_and_cached(reader):
    assert set(reader.progress().values()) == {StepState.STALE}
    assert reader.cached() == []

    reader.make(["doubled"])
    progress = reader.progress()
    assert progress["raw"] == StepState.FRESH
    assert progress["doubled"] == StepState.FRESH
    assert progress["tripled"] == StepState.STALE
    assert reader.cached() == ["raw", "doubled"]


def test_progress_reports_failures(store, tmp_path):
    r = Reader(scenario() + [step("model", broken)], store, root=tmp_path)
    r.make()
    assert r.progress()["model"] == StepState.FAILED
    assert "did not converge" in r.diagnose("model")
    assert r.diagnose("raw") is None


def test_building_state_is_tracked(reader):
    reader._on_event("raw", StepState.BUILDING)
    assert reader.progress()["raw"] == StepState.BUILDING
    reader._on_event("raw", StepState.FRESH)
    assert reader.progress()["raw"] == StepState.STALE


def test_build_times(reader):
    reader.make()
    times = reader.build_times()
    assert set(times) == {"raw", "doubled", "tripled"}
    assert all(t >= 0 for t in times.values())


def test_outdated_after_change(store, tmp_path):
    Reader(scenario(5), store, root=tmp_path).make()
    assert Reader(scenario(5), store, root=tmp_path).outdated() == {}
    reasons = Reader(scenario(7), store, root=tmp_path).outdated()
    assert reasons["raw"] == "params changed"
    assert reasons["doubled"] == "upstream changed: raw"


def test_prune_drops_superseded_objects(store, tmp_path):
    Reader(scenario(5), store, root=tmp_path).make()
    current = Reader(scenario(7), store, root=tmp_path)
    current.make()

    removed = current.prune()
    assert len(removed) == 3
    assert current.cached() == ["raw", "doubled", "tripled"]
    assert current.read("doubled") == 14


def test_read_follows_module_constants(store, tmp_path):
    ns = {"__name__": "plan_ns"}
    exec("FACTOR = 2\n\ndef scaled():\n    return FACTOR * 1\n", ns)
    r = Reader([step("scaled", ns["scaled"])], store, root=tmp_path)
    assert r.read("scaled") == 2

    ns["FACTOR"] = 100
    assert r.outdated() == {"scaled": "code changed"}
    assert r.read("scaled") == 100


def test_make_rejects_a_bare_name(reader):
    with pytest.raises(TypeError):
        reader.make("raw")
