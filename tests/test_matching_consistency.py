"""
Cross-checks the SQL compiler against the in-memory evaluator.

Random documents are stored in a real collection; random filters are then
run both through ``find`` (compiled SQL) and through ``matches`` (Python).
The two must select exactly the same documents.
"""
import random
from datetime import datetime, timedelta, timezone

import pytest

from mongolite import matches

SEED = 20240611
SCALARS = [0, 1, 2, 3, 2.5, -1, "a", "b", "abc", "B", "", True, False, None]
WORDS = ["red", "green", "blue", "Red", "gr"]
BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def random_scalar(rng):
    return rng.choice(SCALARS)


def random_value(rng, depth=0):
    roll = rng.random()
    if roll < 0.55 or depth > 1:
        return random_scalar(rng)
    if roll < 0.8:
        return [random_value(rng, depth + 1) for _ in range(rng.randint(0, 3))]
    return {"c": random_value(rng, depth + 1)}


def random_doc(rng, i):
    doc = {"_id": f"d{i:03d}"}
    if rng.random() < 0.85:
        doc["a"] = random_value(rng)
    if rng.random() < 0.8:
        doc["b"] = rng.choice([0, 1, 2, 3, 4.5, 10, -2])
    if rng.random() < 0.8:
        doc["s"] = " ".join(rng.choice(WORDS) for _ in range(rng.randint(1, 3)))
    if rng.random() < 0.8:
        doc["arr"] = [random_scalar(rng) for _ in range(rng.randint(0, 4))]
    if rng.random() < 0.7:
        doc["objs"] = [{"x": rng.randint(0, 5), "y": rng.choice(WORDS)} for _ in range(rng.randint(0, 3))]
    if rng.random() < 0.7:
        doc["n"] = {"c": random_value(rng, 1)}
    if rng.random() < 0.6:
        doc["when"] = BASE_DATE + timedelta(days=rng.randint(0, 10))
    return doc


def random_leaf(rng):
    path = rng.choice(["a", "b", "s", "arr", "n.c", "arr[0]", "objs[0].x", "missing"])
    kind = rng.randint(0, 11)
    if kind == 0:
        return {path: random_value(rng)}
    if kind == 1:
        return {path: {"$ne": random_value(rng)}}
    if kind == 2:
        op = rng.choice(["$gt", "$gte", "$lt", "$lte"])
        return {path: {op: rng.choice([0, 1, 2, 2.5, "a", "b", True, False])}}
    if kind == 3:
        op = rng.choice(["$in", "$nin"])
        return {path: {op: [random_scalar(rng) for _ in range(rng.randint(0, 3))]}}
    if kind == 4:
        return {path: {"$exists": rng.choice([True, False])}}
    if kind == 5:
        return {path: {"$size": rng.randint(0, 3)}}
    if kind == 6:
        return {path: {"$all": [random_scalar(rng) for _ in range(rng.randint(0, 2))]}}
    if kind == 7:
        return {"s": {"$regex": rng.choice(["^r", "e", "RED", "n$"]), "$options": rng.choice(["", "i"])}}
    if kind == 8:
        op = rng.choice(["$gt", "$lt", "$eq"])
        return {"when": {op: BASE_DATE + timedelta(days=rng.randint(0, 10))}}
    if kind == 9:
        return {"objs": {"$elemMatch": {"x": {"$gte": rng.randint(0, 5)}, "y": rng.choice(WORDS)}}}
    if kind == 10:
        return {rng.choice(["arr", "a"]): {"$elemMatch": {rng.choice(["$gt", "$lte", "$eq"]): random_scalar(rng)}}}
    return {"$text": {"$search": rng.choice(WORDS + ["\"s\""])}}


def random_filter(rng, depth=0):
    roll = rng.random()
    if depth >= 2 or roll < 0.5:
        return random_leaf(rng)
    if roll < 0.65:
        return {"$and": [random_filter(rng, depth + 1) for _ in range(rng.randint(1, 3))]}
    if roll < 0.8:
        return {"$or": [random_filter(rng, depth + 1) for _ in range(rng.randint(1, 3))]}
    if roll < 0.9:
        return {"$nor": [random_filter(rng, depth + 1) for _ in range(rng.randint(1, 2))]}
    return {"$not": random_filter(rng, depth + 1)}


@pytest.fixture
def random_collection(db):
    rng = random.Random(SEED)
    docs = [random_doc(rng, i) for i in range(60)]
    coll = db["random_docs"]
    coll.insert_many(docs)
    return coll


class TestCompilerMatchesEvaluator:
    def test_random_filters(self, random_collection):
        rng = random.Random(SEED + 1)
        stored = random_collection.find().to_list()
        assert len(stored) == 60
        for _ in range(300):
            spec = random_filter(rng)
            via_sql = sorted(d["_id"] for d in random_collection.find(spec))
            via_python = sorted(d["_id"] for d in stored if matches(spec, d))
            assert via_sql == via_python, spec

    @pytest.mark.parametrize("spec", [
        {"a": None},
        {"a": {"$ne": None}},
        {"arr": {"$in": [None]}},
        {"arr": {"$nin": []}},
        {"arr": {"$in": []}},
        {"a": [1, 2]},
        {"a": {"c": 1}},
        {"b": {"$gte": 1, "$lt": 4}},
        {"b": True},
        {"arr": False},
        {"objs.x": 1},
        {"$text": {"$search": ""}},
        {"_id": {"$in": ["d001", "d002", 7]}},
        {"_id": {"$regex": "^d00"}},
        {"_id": {"$exists": False}},
    ])
    def test_edge_cases(self, random_collection, spec):
        stored = random_collection.find().to_list()
        via_sql = sorted(d["_id"] for d in random_collection.find(spec))
        via_python = sorted(d["_id"] for d in stored if matches(spec, d))
        assert via_sql == via_python
