"""
Tests for update operator validation and application.
"""
import pytest

from mongolite.errors import InvalidUpdateError
from mongolite.update import apply_update, upsert_document, validate_update


class TestValidation:
    @pytest.mark.parametrize("update", [
        None,
        [],
        {},
        {"name": "x"},
        {"$rename": {"a": "b"}},
        {"$set": ["a"]},
        {"$set": {"a..b": 1}},
        {"$inc": {"n": "1"}},
        {"$inc": {"n": True}},
        {"$inc": {"n": float("nan")}},
        {"$push": {"t": {"$each": "abc"}}},
        {"$push": {"t": {"$each": [1], "$slice": 2}}},
        {"$set": {"a": 1}, "$inc": {"a": 1}},
        {"$set": {"a": 1}, "$unset": {"a.b": ""}},
        {"$set": {"a.b": 1, "a": {}}},
        {"$unset": {"_id": ""}},
        {"$set": {"_id.x": 1}},
        {"$inc": {"_id": 1}},
        {"$set": {"a[100000000]": 1}},
        {"$push": {"a.b[10001]": 1}},
    ])
    def test_rejected(self, update):
        with pytest.raises(InvalidUpdateError):
            validate_update(update)

    def test_returned_in_application_order(self):
        spec = validate_update({"$pull": {"p": 1}, "$set": {"s": 1}, "$inc": {"i": 1}})
        assert list(spec) == ["$set", "$inc", "$pull"]

    def test_disjoint_paths_accepted(self):
        validate_update({"$set": {"a.b": 1}, "$unset": {"a.c": ""}, "$inc": {"n": 2}})


class TestOperators:
    def test_set_creates_path(self):
        doc = {"_id": "1"}
        assert apply_update(doc, {"$set": {"a.b[1]": "x", "name": "Al"}}) is True
        assert doc == {"_id": "1", "a": {"b": [None, "x"]}, "name": "Al"}

    def test_set_is_idempotent(self):
        once = {"_id": "1", "x": 1}
        apply_update(once, {"$set": {"x": 5}})
        twice = dict(once)
        assert apply_update(twice, {"$set": {"x": 5}}) is True
        assert twice == once == {"_id": "1", "x": 5}

    def test_set_copies_values(self):
        payload = {"list": [1, 2]}
        doc = {}
        apply_update(doc, {"$set": payload})
        doc["list"].append(3)
        assert payload == {"list": [1, 2]}

    def test_set_same_id_allowed(self):
        doc = {"_id": "1"}
        assert apply_update(doc, {"$set": {"_id": "1"}}) is True

    def test_set_other_id_rejected(self):
        with pytest.raises(InvalidUpdateError):
            apply_update({"_id": "1"}, {"$set": {"_id": "2"}})

    def test_set_far_index_rejected(self):
        doc = {"a": []}
        with pytest.raises(InvalidUpdateError):
            apply_update(doc, {"$set": {"a[100000000]": 1}})
        assert doc == {"a": []}

    def test_set_index_at_limit(self):
        doc = {"a": []}
        apply_update(doc, {"$set": {"a[10000]": 1}})
        assert len(doc["a"]) == 10001 and doc["a"][-1] == 1

    def test_unset(self):
        doc = {"a": {"b": 1}, "c": 2}
        assert apply_update(doc, {"$unset": {"a.b": "", "c": 1}}) is True
        assert doc == {"a": {}}
        assert apply_update(doc, {"$unset": {"zzz": ""}}) is False

    def test_inc(self):
        doc = {"n": 1, "s": "text"}
        assert apply_update(doc, {"$inc": {"n": 2, "m": 5}}) is True
        assert doc == {"n": 3, "s": "text", "m": 5}

    def test_inc_non_numeric_is_noop(self):
        doc = {"s": "text", "b": True}
        assert apply_update(doc, {"$inc": {"s": 1, "b": 1}}) is False
        assert doc == {"s": "text", "b": True}

    def test_push(self):
        doc = {"t": ["a"]}
        assert apply_update(doc, {"$push": {"t": "b", "new": 1}}) is True
        assert doc == {"t": ["a", "b"], "new": [1]}

    def test_push_each(self):
        doc = {"t": []}
        assert apply_update(doc, {"$push": {"t": {"$each": [1, 2]}}}) is True
        assert doc == {"t": [1, 2]}

    def test_push_on_non_array_is_noop(self):
        doc = {"t": "scalar"}
        assert apply_update(doc, {"$push": {"t": 1}}) is False
        assert doc == {"t": "scalar"}

    def test_pull_value(self):
        doc = {"t": ["a", "b", "a"]}
        assert apply_update(doc, {"$pull": {"t": "a"}}) is True
        assert doc == {"t": ["b"]}

    def test_pull_condition(self):
        doc = {"scores": [3, 6, 9, "x"]}
        assert apply_update(doc, {"$pull": {"scores": {"$gte": 6}}}) is True
        assert doc == {"scores": [3, "x"]}

    def test_pull_object_condition(self):
        doc = {"items": [{"sku": "a", "qty": 1}, {"sku": "b", "qty": 5}]}
        assert apply_update(doc, {"$pull": {"items": {"qty": {"$gt": 2}}}}) is True
        assert doc == {"items": [{"sku": "a", "qty": 1}]}

    def test_pull_without_match_reports_no_change(self):
        doc = {"t": [1, 2]}
        assert apply_update(doc, {"$pull": {"t": 3, "missing": 1}}) is False

    def test_pull_type_bracketed(self):
        doc = {"t": [1, True, "1"]}
        apply_update(doc, {"$pull": {"t": 1}})
        assert doc == {"t": [True, "1"]}


class TestUpsertSeed:
    def test_key_from_filter(self):
        key, doc = upsert_document({"_id": "missing"}, {"$set": {"x": 1}})
        assert key == "missing"
        assert doc == {"x": 1}

    def test_key_from_eq_filter(self):
        key, _ = upsert_document({"_id": {"$eq": "k"}}, {"$set": {"x": 1}})
        assert key == "k"

    def test_key_from_set(self):
        key, doc = upsert_document({"name": "x"}, {"$set": {"_id": "s", "a.b": 2}})
        assert key == "s"
        assert doc == {"a": {"b": 2}}

    def test_conflicting_keys(self):
        with pytest.raises(InvalidUpdateError):
            upsert_document({"_id": "a"}, {"$set": {"_id": "b"}})

    def test_generated_key(self):
        key, doc = upsert_document({"name": "x"}, {"$inc": {"n": 1}})
        assert isinstance(key, str) and len(key) == 24
        assert doc == {}
