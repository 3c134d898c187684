"""
SM-2 spaced repetition scheduling for vocabulary review cards.

Every function here is pure: the current time is always passed in by the
caller and cards are never modified in place, so a review produces a new
ReviewCard which the caller is responsible for persisting.
"""

import math
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone

DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3

# Self-reported recall quality after a review
QUALITY_LABELS = {
    0: 'blackout',
    1: 'incorrect, remembered on seeing the answer',
    2: 'incorrect, answer seemed easy to recall',
    3: 'correct with serious difficulty',
    4: 'correct after hesitation',
    5: 'perfect',
}


class InvalidQualityError(ValueError):
    """Raised when a review quality is not an integer between 0 and 5."""


class ReviewCard:
    """
    Scheduling state of one vocabulary item for one learner.
    Attributes:
        ease_factor(float): Interval multiplier, never below 1.3
        interval(int): Days between the last review and the next one
        repetitions(int): Successful reviews in a row since the last lapse
        next_review_at(datetime): The card is due at or after this instant
    """

    def __init__(self, ease_factor, interval, repetitions, next_review_at):
        self.ease_factor = ease_factor
        self.interval = interval
        self.repetitions = repetitions
        self.next_review_at = next_review_at

    def __eq__(self, other):
        if not isinstance(other, ReviewCard):
            return NotImplemented
        return (self.ease_factor == other.ease_factor
                and self.interval == other.interval
                and self.repetitions == other.repetitions
                and self.next_review_at == other.next_review_at)

    def __repr__(self):
        return (f"ReviewCard(ease_factor={self.ease_factor!r}, interval={self.interval!r}, "
                f"repetitions={self.repetitions!r}, next_review_at={self.next_review_at!r})")


def _round_half_up(value):
    return int(math.floor(value + 0.5))


def validate_quality(quality):
    """
    Check a quality rating and return it unchanged.
    Raises InvalidQualityError for booleans, non-integers and values outside 0-5.
    """
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidQualityError(f"Quality must be an integer, got {quality!r}")
    if not (MIN_QUALITY <= quality <= MAX_QUALITY):
        raise InvalidQualityError(f"Quality must be between {MIN_QUALITY}-{MAX_QUALITY}, got {quality}")
    return quality


def initialize(now=None):
    """
    Create the card for a word the learner has just added.
    Parameters:
        now(datetime): Creation time, defaults to the current UTC time
    """
    if now is None:
        now = datetime.now(timezone.utc)
    return ReviewCard(DEFAULT_EASE_FACTOR, 0, 0, now)


def next_ease_factor(ease_factor, quality):
    """Ease factor after a review of the given quality, floored at 1.3."""
    miss = MAX_QUALITY - quality
    return max(MIN_EASE_FACTOR, ease_factor + (0.1 - miss * (0.08 + miss * 0.02)))


def schedule_next(quality, card, now):
    """
    Perform one review cycle using SM-2 scheduling rules.
    Parameters:
        quality(int): Performance rating (0-5 integer)
        card(ReviewCard): Current state, left untouched
        now(datetime): Time of the review
    Returns:
        ReviewCard: The state to persist
    """
    validate_quality(quality)

    ease_factor = next_ease_factor(card.ease_factor, quality)

    if quality < PASSING_QUALITY:
        repetitions = 0
        interval = 1
    else:
        repetitions = card.repetitions + 1
        if repetitions == 1:
            interval = 1
        elif repetitions == 2:
            interval = 6
        else:
            # previous interval times the updated ease
            interval = max(1, _round_half_up(card.interval * ease_factor))

    return ReviewCard(ease_factor, interval, repetitions, now + timedelta(days=interval))


def is_due(next_review_at, now):
    return now >= next_review_at


def _next_review_of(card):
    if isinstance(card, Mapping):
        return card['next_review_at']
    return card.next_review_at


def select_due(cards, now):
    """
    Get the cards that are due at the given time.
    Input order is preserved; nothing is sorted or deduplicated.
    Parameters:
        cards: ReviewCards, or any objects/mappings carrying next_review_at
        now(datetime): The time to check against
    """
    return [card for card in cards if is_due(_next_review_of(card), now)]


def mastery_level(repetitions, ease_factor):
    """
    Informational mastery percentage (0-100).
    Up to 60 points come from the repetition streak, up to 40 from the ease factor.
    """
    repetition_score = min(repetitions * 10, 60)
    ease_score = min((ease_factor - MIN_EASE_FACTOR) / (DEFAULT_EASE_FACTOR - MIN_EASE_FACTOR) * 40, 40)
    return min(_round_half_up(repetition_score + ease_score), 100)
