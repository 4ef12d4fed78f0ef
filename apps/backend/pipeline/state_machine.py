"""
Attempt state machine.

pending -> fetching -> extracting -> completed
fetching | extracting -> failed
failed -> retrying -> fetching | extracting | failed
failed -> dead_letter | manual

Every attempt passes through fetching before it can fail or complete, even when
the page comes straight from the cache.
"""

import logging
from typing import Dict, FrozenSet, Optional

from .models import Attempt, AttemptStatus, utcnow

logger = logging.getLogger(__name__)

S = AttemptStatus

TRANSITIONS: Dict[AttemptStatus, FrozenSet[AttemptStatus]] = {
    S.PENDING: frozenset({S.FETCHING}),
    S.FETCHING: frozenset({S.EXTRACTING, S.FAILED}),
    S.EXTRACTING: frozenset({S.COMPLETED, S.FAILED}),
    S.FAILED: frozenset({S.RETRYING, S.DEAD_LETTER, S.MANUAL}),
    S.RETRYING: frozenset({S.FETCHING, S.EXTRACTING, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.DEAD_LETTER: frozenset(),
    S.MANUAL: frozenset(),
}

RETRYABLE_STATUSES = frozenset({S.FAILED, S.RETRYING})


class InvalidTransition(Exception):
    """Raised when an attempt is asked to move along an edge that does not exist."""

    def __init__(self, attempt: Attempt, target: AttemptStatus):
        self.attempt_id = attempt.id
        self.source = attempt.status
        self.target = target
        super().__init__(f"Attempt {attempt.id}: cannot transition {attempt.status.value} -> {target.value}")


def can_transition(source: AttemptStatus, target: AttemptStatus) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


def transition(attempt: Attempt, target: AttemptStatus) -> Attempt:
    """Move an attempt to a new status, enforcing the allowed edges."""
    if not can_transition(attempt.status, target):
        raise InvalidTransition(attempt, target)

    source = attempt.status
    attempt.status = target
    attempt.updated_at = utcnow()
    logger.debug(f"[state_machine] attempt={attempt.id} {source.value} -> {target.value}")
    return attempt


def start_fetch(attempt: Attempt) -> Attempt:
    return transition(attempt, S.FETCHING)


def start_extract(attempt: Attempt) -> Attempt:
    return transition(attempt, S.EXTRACTING)


def mark_completed(attempt: Attempt) -> Attempt:
    return transition(attempt, S.COMPLETED)


def mark_failed(attempt: Attempt, failed_step: str, error_message: Optional[str]) -> Attempt:
    """Fail an attempt; the failing step and message are always recorded."""
    transition(attempt, S.FAILED)
    attempt.failed_step = failed_step
    attempt.error_message = error_message or "Unknown error"
    return attempt


def retry_attempt(attempt: Attempt) -> Attempt:
    """failed -> retrying, counting the retry."""
    transition(attempt, S.RETRYING)
    attempt.retry_count += 1
    return attempt


def send_to_dlq(attempt: Attempt) -> Attempt:
    return transition(attempt, S.DEAD_LETTER)


def mark_manual(attempt: Attempt) -> Attempt:
    return transition(attempt, S.MANUAL)


def is_retryable(attempt: Attempt) -> bool:
    return attempt.status in RETRYABLE_STATUSES


def ensure_retrying(attempt: Attempt) -> Attempt:
    """Bring a retry-eligible attempt into the retrying state."""
    if attempt.status == S.FAILED:
        retry_attempt(attempt)
    elif attempt.status != S.RETRYING:
        raise InvalidTransition(attempt, S.RETRYING)
    return attempt
