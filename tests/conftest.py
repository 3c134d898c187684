import os
from datetime import datetime, timezone

import pytest
from pymongo.errors import DuplicateKeyError

os.environ.setdefault("JWT_SECRET", "test-secret")

import db  # noqa: E402


class FakeStore:
    """In-memory stand-in for the record functions of db.py"""

    def __init__(self):
        self.records = {}
        self.users = {}

    def get_user(self, uid):
        user = self.users.get(uid)
        return dict(user) if user else None

    def update_user_progress(self, uid, fields):
        if uid not in self.users:
            return False
        self.users[uid].update(fields)
        return True

    def count_user_records(self, uid):
        return sum(1 for (u, _) in self.records if u == uid)

    def insert_record(self, uid, vocabulary_id, card, now=None):
        key = (uid, vocabulary_id)
        if key in self.records:
            raise DuplicateKeyError("duplicate key")
        record = {
            "user_id": uid,
            "vocabulary_id": vocabulary_id,
            "status": "new",
            "correct_count": 0,
            "incorrect_count": 0,
            "last_reviewed_at": None,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        record.update(db.card_to_fields(card))
        self.records[key] = record
        return dict(record)

    def load_record(self, uid, vocabulary_id):
        record = self.records.get((uid, vocabulary_id))
        return dict(record) if record else None

    def get_user_records(self, uid):
        return [dict(r) for (u, _), r in self.records.items() if u == uid]

    def save_review(self, uid, vocabulary_id, expected_version, updates):
        record = self.records.get((uid, vocabulary_id))
        if record is None or record["version"] != expected_version:
            return None
        record.update(updates)
        record["version"] += 1
        return dict(record)

    def update_status(self, uid, vocabulary_id, status):
        record = self.records.get((uid, vocabulary_id))
        if record is None:
            return False
        record["status"] = status
        record["version"] += 1
        return True

    def delete_record(self, uid, vocabulary_id):
        return self.records.pop((uid, vocabulary_id), None) is not None


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def now():
    return datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def learner(store):
    store.users["u1"] = {
        "username": "anna",
        "total_vocabulary_learned": 0,
        "current_streak": 0,
        "longest_streak": 0,
        "last_activity_date": None,
    }
    return store.users["u1"]
