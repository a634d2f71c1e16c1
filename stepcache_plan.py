# stepcache_plan.py
# Credit-risk model comparison, reduced to a dependency-free demo:
# simulate applicants, split, score each single-feature rule, keep the best.
from __future__ import annotations

import random

from stepcache.dsl import matrix, plan, step

FEATURES = ["income", "debt_ratio", "late_payments"]


def simulate(n, seed):
    rng = random.Random(seed)
    rows = []
    for _ in range(n):
        income = rng.gauss(50, 15)
        debt_ratio = rng.random()
        late = rng.randint(0, 6)
        risk = 0.03 * late + 0.5 * debt_ratio - 0.01 * income
        rows.append({
            "income": income,
            "debt_ratio": debt_ratio,
            "late_payments": late,
            "default": int(risk + rng.gauss(0, 0.2) > 0.1),
        })
    return rows


def split(raw, test_share=0.25):
    cut = int(len(raw) * (1 - test_share))
    return {"train": raw[:cut], "test": raw[cut:]}


def auc(scores, labels):
    # Mann-Whitney estimate; ties count half
    pos = [s for s, y in zip(scores, labels) if y == 1]
    neg = [s for s, y in zip(scores, labels) if y == 0]
    if not pos or not neg:
        return 0.5
    wins = sum((p > q) + 0.5 * (p == q) for p in pos for q in neg)
    return wins / (len(pos) * len(neg))


def score_feature(datasets, feature):
    train = datasets["train"]
    value = auc([r[feature] for r in train], [r["default"] for r in train])
    # a feature that lowers risk is used with its sign flipped
    return {"feature": feature, "sign": 1 if value >= 0.5 else -1, "cv_auc": max(value, 1 - value)}


def pick_best(**scores):
    return max(scores.values(), key=lambda s: s["cv_auc"])


def evaluate(datasets, best):
    test = datasets["test"]
    scores = [best["sign"] * r[best["feature"]] for r in test]
    return {"feature": best["feature"], "test_auc": auc(scores, [r["default"] for r in test])}


PLAN = plan(
    step("raw", simulate, params={"n": 400, "seed": 42}),
    step("datasets", split, needs=["raw"]),
    matrix("feature", FEATURES).steps(
        lambda f: step(f"score_{f}", score_feature, needs=["datasets"], params={"feature": f})
    ),
    step("best", pick_best, needs=[f"score_{f}" for f in FEATURES]),
    step("report", evaluate, needs=["datasets", "best"]),
)
