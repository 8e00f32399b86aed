"""
Tests for cursor building, execution and projection.
"""
import pytest

from mongolite import ASCENDING, DESCENDING
from mongolite.cursor import apply_projection, normalize_sort
from mongolite.errors import InvalidOperationError


@pytest.fixture
def numbers(db):
    coll = db["numbers"]
    coll.insert_many([{"_id": f"n{i}", "v": i, "parity": i % 2} for i in range(10)])
    return coll


class TestBuilders:
    def test_builders_chain_without_executing(self, numbers):
        cursor = numbers.find({"parity": 0}).sort("v", DESCENDING).skip(1).limit(2)
        assert [d["v"] for d in cursor] == [6, 4]

    def test_negative_counts_rejected(self, numbers):
        with pytest.raises(ValueError):
            numbers.find().skip(-1)
        with pytest.raises(ValueError):
            numbers.find().limit(-5)

    def test_builder_after_execution_rejected(self, numbers):
        cursor = numbers.find()
        cursor.to_list()
        with pytest.raises(InvalidOperationError):
            cursor.limit(1)
        with pytest.raises(InvalidOperationError):
            cursor.sort("v")

    def test_reexecution_reruns_query(self, numbers):
        cursor = numbers.find({"v": {"$gte": 8}})
        assert len(cursor.to_list()) == 2
        numbers.insert_one({"_id": "n10", "v": 10})
        assert len(cursor.to_list()) == 3

    def test_sort_forms(self):
        assert normalize_sort("a") == [("a", ASCENDING)]
        assert normalize_sort("a", DESCENDING) == [("a", -1)]
        assert normalize_sort({"a": 1, "b": -1}) == [("a", 1), ("b", -1)]
        assert normalize_sort([("a", -1), ("b", 1)]) == [("a", -1), ("b", 1)]
        with pytest.raises(ValueError):
            normalize_sort({"a": 2})


class TestExecution:
    def test_limit_zero_means_no_limit(self, numbers):
        assert len(numbers.find().limit(0).to_list()) == 10

    def test_skip_without_limit(self, numbers):
        cursor = numbers.find().sort("v").skip(7)
        assert cursor.explain()["sql"].endswith("ORDER BY json_extract(data, '$.v') ASC LIMIT -1 OFFSET ?")
        assert [d["v"] for d in cursor] == [7, 8, 9]

    def test_limit_precedes_offset(self, numbers):
        plan = numbers.find({"v": {"$gt": 1}}).skip(2).limit(3).explain()
        assert plan["sql"].endswith("LIMIT ? OFFSET ?")
        assert plan["params"][-2:] == [3, 2]

    def test_sort_by_key_uses_column(self, numbers):
        plan = numbers.find().sort("_id", DESCENDING).explain()
        assert "ORDER BY _id DESC" in plan["sql"]

    def test_multi_key_sort(self, numbers):
        docs = numbers.find().sort([("parity", ASCENDING), ("v", DESCENDING)]).limit(3).to_list()
        assert [d["v"] for d in docs] == [8, 6, 4]

    def test_to_list_length(self, numbers):
        assert len(numbers.find().to_list(4)) == 4
        assert numbers.find().to_list(0) == []
        assert len(numbers.find().limit(2).to_list(5)) == 2

    def test_first_does_not_change_limit(self, numbers):
        cursor = numbers.find().sort("v")
        assert cursor.first()["v"] == 0
        assert len(cursor.to_list()) == 10

    def test_first_on_empty(self, numbers):
        assert numbers.find({"v": 99}).first() is None

    def test_count_ignores_skip_and_limit(self, numbers):
        assert numbers.find({"parity": 1}).skip(1).limit(1).count() == 5

    def test_explain_does_not_execute(self, numbers):
        cursor = numbers.find({"v": 3})
        plan = cursor.explain()
        assert plan["sql"].startswith('SELECT _id, data FROM "numbers" WHERE ')
        cursor.limit(1)


class TestProjection:
    DOC = {"_id": "u1", "name": "Alice", "email": "a@x", "address": {"city": "Paris", "zip": "1"},
           "tags": ["a", "b"]}

    def test_inclusion(self):
        assert apply_projection(self.DOC, {"name": 1}) == {"_id": "u1", "name": "Alice"}

    def test_exclusion(self):
        out = apply_projection(self.DOC, {"email": 0})
        assert "email" not in out
        assert out["name"] == "Alice" and out["_id"] == "u1"

    def test_id_only_exclusion(self):
        out = apply_projection(self.DOC, {"_id": 0})
        assert out == {k: v for k, v in self.DOC.items() if k != "_id"}

    def test_inclusion_without_id(self):
        assert apply_projection(self.DOC, {"name": True, "_id": False}) == {"name": "Alice"}

    def test_nested_inclusion(self):
        assert apply_projection(self.DOC, {"address.city": 1}) == {"_id": "u1", "address": {"city": "Paris"}}

    def test_nested_exclusion(self):
        out = apply_projection(self.DOC, {"address.zip": 0, "tags[0]": 0})
        assert out["address"] == {"city": "Paris"}
        assert out["tags"] == ["b"]
        assert self.DOC["address"] == {"city": "Paris", "zip": "1"}

    def test_missing_included_field_is_skipped(self):
        assert apply_projection(self.DOC, {"nope": 1}) == {"_id": "u1"}

    def test_project_builder(self, users):
        docs = users.find({}, sort={"age": 1}).project({"name": 1, "_id": 0}).to_list()
        assert docs == [{"name": "Bob"}, {"name": "Alice"}]
