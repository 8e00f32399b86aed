from typing import Any, List, Optional


# =========================
# Results (pymongo-like)
# =========================
class InsertOneResult:
    acknowledged = True

    def __init__(self, inserted_id):
        self.inserted_id = inserted_id

    def __repr__(self):
        return f"InsertOneResult(inserted_id={self.inserted_id!r})"


class InsertManyResult:
    acknowledged = True

    def __init__(self, inserted_ids: List[Any]):
        self.inserted_ids = inserted_ids

    def __repr__(self):
        return f"InsertManyResult(inserted_ids={self.inserted_ids!r})"


class UpdateResult:
    acknowledged = True

    def __init__(self, matched_count, modified_count, upserted_id: Optional[Any] = None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id

    def __repr__(self):
        return (f"UpdateResult(matched_count={self.matched_count}, modified_count={self.modified_count}, "
                f"upserted_id={self.upserted_id!r})")


class DeleteResult:
    acknowledged = True

    def __init__(self, deleted_count):
        self.deleted_count = deleted_count

    def __repr__(self):
        return f"DeleteResult(deleted_count={self.deleted_count})"
