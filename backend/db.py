import logging
import os
import threading
from datetime import datetime, timezone

from bson import ObjectId
from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient, ReturnDocument

from sm2_card import ReviewCard

load_dotenv()

logger = logging.getLogger(__name__)

DB_NAME = os.getenv("DATABASE_NAME", "dutch_srs")

# Ease factor is kept as an integer number of thousandths (2.5 -> 2500)
EASE_SCALE = 1000

_client = None
_client_lock = threading.Lock()


def get_db():
    """
    Return the database handle.
    The first call connects and creates the indexes; later calls reuse the client.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                mongo_uri = os.getenv("MONGO_URI")
                if not mongo_uri:
                    raise RuntimeError("MONGO_URI is required")
                client = MongoClient(
                    mongo_uri,
                    tz_aware=True,
                    serverSelectionTimeoutMS=5000,
                    connectTimeoutMS=5000,
                )
                create_indexes(client[DB_NAME])
                _client = client
                logger.info("Connected to MongoDB database %s", DB_NAME)
    return _client[DB_NAME]


def users():
    return get_db().users


def user_vocabulary():
    return get_db().user_vocabulary


def create_indexes(database):
    # (user_id, vocabulary_id) uniqueness is what makes a second add fail
    database.users.create_index([("username", ASCENDING)], unique=True)
    database.user_vocabulary.create_index(
        [("user_id", ASCENDING), ("vocabulary_id", ASCENDING)], unique=True
    )
    database.user_vocabulary.create_index([("user_id", ASCENDING), ("next_review_at", ASCENDING)])


def _utcnow():
    return datetime.now(timezone.utc)


# ==================== Conversion ====================

def ease_to_stored(ease_factor):
    return int(round(ease_factor * EASE_SCALE))


def ease_from_stored(stored):
    if stored is None:
        return 2.5
    return stored / EASE_SCALE


def card_to_fields(card):
    return {
        "ease_factor": ease_to_stored(card.ease_factor),
        "interval": card.interval,
        "repetitions": card.repetitions,
        "next_review_at": card.next_review_at,
    }


def card_from_record(record):
    return ReviewCard(
        ease_from_stored(record.get("ease_factor")),
        record.get("interval", 0),
        record.get("repetitions", 0),
        record["next_review_at"],
    )


# ==================== Users ====================

def get_user_by_username(username):
    return users().find_one({"username": username})


def create_user(username, password_hash):
    r = users().insert_one({
        "username": username,
        "password": password_hash,
        "total_vocabulary_learned": 0,
        "current_streak": 0,
        "longest_streak": 0,
        "last_activity_date": None,
        "created_at": _utcnow()
    })
    return str(r.inserted_id)


def _user_filter(uid):
    # tokens carry the ObjectId as a string
    return {"_id": ObjectId(uid) if ObjectId.is_valid(uid) else uid}


def get_user(uid):
    return users().find_one(_user_filter(uid), {"password": 0})


def update_user_progress(uid, fields):
    """Set word count or streak fields on a user document."""
    fields = dict(fields)
    fields["updated_at"] = _utcnow()
    return users().update_one(_user_filter(uid), {"$set": fields}).matched_count > 0


# ==================== Vocabulary records ====================

def insert_record(uid, vocabulary_id, card, now=None):
    """
    Store a freshly initialized card for (uid, vocabulary_id).
    Raises pymongo.errors.DuplicateKeyError when the pair already exists.
    """
    now = now or _utcnow()
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
    record.update(card_to_fields(card))
    user_vocabulary().insert_one(record)
    record.pop("_id", None)
    return record


def load_record(uid, vocabulary_id):
    return user_vocabulary().find_one(
        {"user_id": uid, "vocabulary_id": vocabulary_id}, {"_id": 0}
    )


def get_user_records(uid):
    return list(user_vocabulary().find({"user_id": uid}, {"_id": 0}).sort("created_at", ASCENDING))


def save_review(uid, vocabulary_id, expected_version, updates):
    """
    Write back a reviewed record if nobody else has written it since it was read.
    Returns the stored document, or None when the version check failed.
    """
    fields = dict(updates)
    fields["updated_at"] = _utcnow()
    return user_vocabulary().find_one_and_update(
        {"user_id": uid, "vocabulary_id": vocabulary_id, "version": expected_version},
        {"$set": fields, "$inc": {"version": 1}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )


def update_status(uid, vocabulary_id, status):
    r = user_vocabulary().update_one(
        {"user_id": uid, "vocabulary_id": vocabulary_id},
        {"$set": {"status": status, "updated_at": _utcnow()}, "$inc": {"version": 1}}
    )
    return r.matched_count > 0


def delete_record(uid, vocabulary_id):
    return user_vocabulary().delete_one(
        {"user_id": uid, "vocabulary_id": vocabulary_id}
    ).deleted_count > 0


def count_user_records(uid):
    return user_vocabulary().count_documents({"user_id": uid})
