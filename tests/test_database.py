"""
Tests for databases, the client and storage lifecycle.
"""
import os

import pytest

from mongolite import Database, InvalidOperationError, MongoLiteClient, RetryPolicy


class TestDatabase:
    def test_collections_are_cached(self, db):
        assert db["users"] is db.collection("users")

    def test_list_collection_names(self, db):
        db["b"].insert_one({"_id": "1"})
        db["a"]
        assert db.list_collection_names() == ["a", "b"]

    def test_drop_collection(self, db):
        db["a"].insert_one({"_id": "1"})
        db.drop_collection("a")
        assert db.list_collection_names() == []
        assert db["a"].count_documents() == 0

    def test_names(self, db, file_db):
        assert db.name == "mongolite"
        assert file_db.name == "app"

    def test_file_database_persists(self, tmp_path):
        path = str(tmp_path / "persist.db")
        with Database(path) as first:
            first["users"].insert_one({"_id": "u1", "name": "Alice"})
        with Database(path) as second:
            assert second["users"].find_one({"_id": "u1"}) == {"_id": "u1", "name": "Alice"}

    def test_two_connections_see_each_other(self, file_db):
        other = Database(file_db.path, retry=RetryPolicy(sleep=lambda _: None))
        try:
            file_db["users"].insert_one({"_id": "u1"})
            assert other["users"].count_documents() == 1
        finally:
            other.close()

    def test_read_only(self, file_db):
        file_db["users"].insert_one({"_id": "u1"})
        reader = Database(file_db.path, read_only=True)
        try:
            assert reader["users"].count_documents() == 1
        finally:
            reader.close()

    def test_closed_database_rejects_access(self, db):
        users = db["users"]
        db.close()
        assert db.closed
        with pytest.raises(InvalidOperationError):
            users.find().to_list()
        with pytest.raises(InvalidOperationError):
            users.insert_one({"_id": "x"})
        db.close()

    def test_nested_transactions_join(self, db):
        coll = db["t"]
        with pytest.raises(RuntimeError):
            with db.transaction():
                coll.insert_one({"_id": "outer"})
                with db.transaction():
                    coll.insert_one({"_id": "inner"})
                raise RuntimeError("abort")
        assert coll.count_documents() == 0


class TestClient:
    def test_databases_map_to_files(self, tmp_path):
        with MongoLiteClient(str(tmp_path)) as client:
            client["shop"]["orders"].insert_one({"_id": "o1"})
            assert client["shop"] is client["shop"]
            assert client.list_database_names() == ["shop"]
        assert os.path.exists(tmp_path / "shop.db")

    def test_invalid_database_name(self, tmp_path):
        client = MongoLiteClient(str(tmp_path))
        with pytest.raises(ValueError):
            client["../escape"]
        client.close()

    def test_options_are_forwarded(self, tmp_path):
        with MongoLiteClient(str(tmp_path), wal=False) as client:
            db = client["plain"]
            assert db._storage.query_one("PRAGMA journal_mode")[0] != "wal"
