"""
The SM2System class runs vocabulary reviews on top of the SM-2 scheduler.
It loads a learner's card from storage, schedules it, keeps the progress
counters and status in step, and writes the result back with a version check
so that two concurrent reviews of the same card cannot both be committed.
"""

import logging
from datetime import datetime, timezone

from pymongo.errors import DuplicateKeyError

import db
from sm2_card import (
    PASSING_QUALITY, initialize, mastery_level, schedule_next,
    select_due, validate_quality,
)

logger = logging.getLogger(__name__)

STATUSES = ('new', 'learning', 'mastered', 'archived')
MASTERED_THRESHOLD = 80


class ReviewError(Exception):
    """Base class for review service errors."""


class CardNotFoundError(ReviewError):
    pass


class CardExistsError(ReviewError):
    pass


class ConcurrentReviewError(ReviewError):
    """The card changed between reading and writing it back."""


def _utcnow():
    return datetime.now(timezone.utc)


def next_status(current, repetitions, ease_factor, quality):
    """
    Status of a record after a review.
    Archived words stay archived, a manual 'mastered' mark survives until a lapse,
    otherwise the word is mastered once its mastery level reaches 80.
    """
    if current == 'archived':
        return current
    if current == 'mastered' and quality >= PASSING_QUALITY:
        return current
    if mastery_level(repetitions, ease_factor) >= MASTERED_THRESHOLD:
        return 'mastered'
    return 'learning'


def next_streak(current, longest, last_activity, now):
    """
    Daily activity streak after activity at now.
    Returns (current, longest), or None when there was already activity that day
    or later.
    Days are counted in UTC.
    """
    today = _utc_day(now)
    if last_activity is None:
        current = 1
    else:
        days = (today - _utc_day(last_activity)).days
        if days <= 0:
            return None
        current = current + 1 if days == 1 else 1
    return current, max(current, longest)


def _utc_day(moment):
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date()


def with_mastery(record):
    """Copy of a stored record with the ease factor as a float and a mastery score."""
    out = dict(record)
    card = db.card_from_record(record)
    out['ease_factor'] = card.ease_factor
    out['mastery'] = mastery_level(card.repetitions, card.ease_factor)
    return out


class SM2System:
    """SM-2 review service for one storage backend"""

    def __init__(self, store=db):
        """
        Parameters:
            store: Module or object providing the record functions of db.py
        """
        self.store = store

    def add_word(self, user_id, vocabulary_id, now=None):
        """
        Start tracking a vocabulary item for a user. The new card is due immediately.
        """
        now = now or _utcnow()
        card = initialize(now)
        try:
            record = self.store.insert_record(user_id, vocabulary_id, card, now)
        except DuplicateKeyError:
            raise CardExistsError(f"Word {vocabulary_id} is already in the list")
        logger.info("User %s added word %s", user_id, vocabulary_id)
        self._refresh_word_count(user_id)
        self._record_activity(user_id, now)
        return with_mastery(record)

    def submit_review(self, user_id, vocabulary_id, quality, now=None):
        """
        Review an existing card.
        Parameters:
            user_id(str): Owner of the card
            vocabulary_id(str): Vocabulary item reviewed
            quality(int): Rating after reviewing the card (0-5)
            now(datetime): Time of the review, defaults to the current UTC time
        Nothing is written when the quality is invalid, the card is missing
        or the version check fails.
        """
        validate_quality(quality)
        now = now or _utcnow()

        record = self.store.load_record(user_id, vocabulary_id)
        if not record:
            raise CardNotFoundError(f"Word {vocabulary_id} not found")

        card = schedule_next(quality, db.card_from_record(record), now)

        updates = db.card_to_fields(card)
        updates['last_reviewed_at'] = now
        updates['status'] = next_status(record.get('status', 'new'), card.repetitions,
                                        card.ease_factor, quality)
        if quality >= PASSING_QUALITY:
            updates['correct_count'] = record.get('correct_count', 0) + 1
        else:
            updates['incorrect_count'] = record.get('incorrect_count', 0) + 1

        saved = self.store.save_review(user_id, vocabulary_id, record.get('version', 0), updates)
        if saved is None:
            logger.warning("Concurrent review of word %s by user %s rejected", vocabulary_id, user_id)
            raise ConcurrentReviewError(f"Word {vocabulary_id} was updated by another review")

        logger.info("User %s reviewed word %s: quality=%d interval=%d repetitions=%d",
                    user_id, vocabulary_id, quality, card.interval, card.repetitions)
        self._record_activity(user_id, now)
        return with_mastery(saved)

    def list_words(self, user_id):
        return [with_mastery(r) for r in self.store.get_user_records(user_id)]

    def due_words(self, user_id, now=None):
        """
        Get the non-archived words due for review, in storage order.
        """
        now = now or _utcnow()
        records = [r for r in self.store.get_user_records(user_id) if r.get('status') != 'archived']
        return [with_mastery(r) for r in select_due(records, now)]

    def _set_status(self, user_id, vocabulary_id, status):
        if not self.store.update_status(user_id, vocabulary_id, status):
            raise CardNotFoundError(f"Word {vocabulary_id} not found")
        logger.info("User %s marked word %s as %s", user_id, vocabulary_id, status)

    def mark_mastered(self, user_id, vocabulary_id):
        self._set_status(user_id, vocabulary_id, 'mastered')

    def archive(self, user_id, vocabulary_id):
        self._set_status(user_id, vocabulary_id, 'archived')

    def remove_word(self, user_id, vocabulary_id):
        if not self.store.delete_record(user_id, vocabulary_id):
            raise CardNotFoundError(f"Word {vocabulary_id} not found")
        logger.info("User %s removed word %s", user_id, vocabulary_id)
        self._refresh_word_count(user_id)

    def _refresh_word_count(self, user_id):
        self.store.update_user_progress(
            user_id, {'total_vocabulary_learned': self.store.count_user_records(user_id)})

    def _record_activity(self, user_id, now):
        user = self.store.get_user(user_id)
        if not user:
            logger.warning("Activity for unknown user %s not counted in streak", user_id)
            return
        streak = next_streak(user.get('current_streak', 0), user.get('longest_streak', 0),
                             user.get('last_activity_date'), now)
        if streak is None:
            return
        current, longest = streak
        self.store.update_user_progress(user_id, {
            'current_streak': current,
            'longest_streak': longest,
            'last_activity_date': now,
        })

    def stats(self, user_id, now=None):
        now = now or _utcnow()
        records = self.store.get_user_records(user_id)
        counts = {status: 0 for status in STATUSES}
        for r in records:
            counts[r.get('status', 'new')] = counts.get(r.get('status', 'new'), 0) + 1
        active = [r for r in records if r.get('status') != 'archived']
        user = self.store.get_user(user_id) or {}
        return {
            'total': len(records),
            'due': len(select_due(active, now)),
            'new': counts['new'],
            'learning': counts['learning'],
            'mastered': counts['mastered'],
            'archived': counts['archived'],
            'vocabulary_learned': user.get('total_vocabulary_learned', 0),
            'current_streak': user.get('current_streak', 0),
            'longest_streak': user.get('longest_streak', 0),
            'last_activity_date': user.get('last_activity_date'),
        }
