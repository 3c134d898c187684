"""Tests for the MongoDB persistence helpers with mocked collections."""

import threading
from unittest.mock import MagicMock, patch

import pytest
from bson import ObjectId
from pymongo import ReturnDocument

import db
from sm2_card import ReviewCard, schedule_next, initialize


@pytest.fixture
def collection():
    mock = MagicMock()
    with patch("db.user_vocabulary", return_value=mock):
        yield mock


def test_ease_fixed_point_round_trip(now):
    card = initialize(now)
    for quality in [5, 5, 1, 3, 4, 0, 2, 5]:
        card = schedule_next(quality, card, now)
        stored = db.ease_to_stored(card.ease_factor)
        assert isinstance(stored, int)
        assert db.ease_from_stored(stored) == pytest.approx(card.ease_factor, abs=1e-9)


def test_card_from_record_defaults(now):
    card = db.card_from_record({"next_review_at": now})
    assert card == ReviewCard(2.5, 0, 0, now)


def test_card_fields_round_trip(now):
    card = ReviewCard(2.36, 6, 2, now)
    assert db.card_from_record(db.card_to_fields(card)) == card


def test_insert_record(collection, now):
    record = db.insert_record("u1", "huis", initialize(now), now)
    collection.insert_one.assert_called_once()
    stored = collection.insert_one.call_args[0][0]
    assert stored["user_id"] == "u1"
    assert stored["vocabulary_id"] == "huis"
    assert stored["ease_factor"] == 2500
    assert stored["version"] == 0
    assert stored["status"] == "new"
    assert "_id" not in record


def test_save_review_checks_version(collection):
    collection.find_one_and_update.return_value = None
    assert db.save_review("u1", "huis", 3, {"interval": 6}) is None

    filter_, update = collection.find_one_and_update.call_args[0]
    assert filter_ == {"user_id": "u1", "vocabulary_id": "huis", "version": 3}
    assert update["$inc"] == {"version": 1}
    assert update["$set"]["interval"] == 6
    assert "updated_at" in update["$set"]
    assert collection.find_one_and_update.call_args[1]["return_document"] == ReturnDocument.AFTER


def test_update_status_reports_missing(collection):
    collection.update_one.return_value.matched_count = 0
    assert db.update_status("u1", "huis", "archived") is False
    collection.update_one.return_value.matched_count = 1
    assert db.update_status("u1", "huis", "archived") is True


def test_delete_record(collection):
    collection.delete_one.return_value.deleted_count = 1
    assert db.delete_record("u1", "huis") is True
    collection.delete_one.assert_called_once_with({"user_id": "u1", "vocabulary_id": "huis"})


def test_get_db_requires_uri(monkeypatch):
    monkeypatch.delenv("MONGO_URI", raising=False)
    monkeypatch.setattr(db, "_client", None)
    with pytest.raises(RuntimeError):
        db.get_db()


def test_create_user_returns_id():
    users = MagicMock()
    users.insert_one.return_value.inserted_id = "abc123"
    with patch("db.users", return_value=users):
        assert db.create_user("anna", "hash") == "abc123"
    stored = users.insert_one.call_args[0][0]
    assert stored["username"] == "anna"
    assert stored["current_streak"] == 0
    assert stored["total_vocabulary_learned"] == 0
    assert stored["created_at"].tzinfo is not None


def test_create_indexes():
    database = MagicMock()
    db.create_indexes(database)
    database.users.create_index.assert_called_once_with([("username", 1)], unique=True)
    first = database.user_vocabulary.create_index.call_args_list[0]
    assert first[0][0] == [("user_id", 1), ("vocabulary_id", 1)]
    assert first[1] == {"unique": True}


def test_first_connection_creates_indexes_once(monkeypatch):
    monkeypatch.setenv("MONGO_URI", "mongodb://localhost:27017")
    monkeypatch.setattr(db, "_client", None)
    with patch("db.MongoClient") as client_cls, patch("db.create_indexes") as create:
        db.get_db()
        db.get_db()
        db.users()
    client_cls.assert_called_once()
    assert client_cls.call_args[1]["tz_aware"] is True
    create.assert_called_once_with(client_cls.return_value[db.DB_NAME])


def test_concurrent_first_access_builds_one_client(monkeypatch):
    monkeypatch.setenv("MONGO_URI", "mongodb://localhost:27017")
    monkeypatch.setattr(db, "_client", None)
    with patch("db.MongoClient") as client_cls, patch("db.create_indexes"):
        threads = [threading.Thread(target=db.get_db) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
    client_cls.assert_called_once()


def test_user_progress_by_object_id():
    users = MagicMock()
    users.update_one.return_value.matched_count = 1
    uid = "65f0c2a1b2c3d4e5f6a7b8c9"
    with patch("db.users", return_value=users):
        assert db.update_user_progress(uid, {"current_streak": 2}) is True
    filter_, update = users.update_one.call_args[0]
    assert filter_ == {"_id": ObjectId(uid)}
    assert update["$set"]["current_streak"] == 2
    assert "updated_at" in update["$set"]


def test_get_user_hides_password():
    users = MagicMock()
    with patch("db.users", return_value=users):
        db.get_user("u1")
    users.find_one.assert_called_once_with({"_id": "u1"}, {"password": 0})


def test_count_user_records(collection):
    collection.count_documents.return_value = 3
    assert db.count_user_records("u1") == 3
    collection.count_documents.assert_called_once_with({"user_id": "u1"})
