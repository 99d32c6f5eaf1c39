# ledger.py
# -----------------------------------------------------------------------------
# Attempt accounting per (learner, assessment).
# - remaining = max(0, max_attempts - count); max_attempts == 0 -> unlimited (None)
# - assert_can_start runs once, before a session is built, never mid-session
# -----------------------------------------------------------------------------
from typing import Any, Iterable, Optional

from errors import LimitExceededError
from models import AssessmentDefinition, AttemptRecord


def attempts_remaining(definition: AssessmentDefinition, count: int) -> Optional[int]:
    """Remaining attempts, or None when the assessment allows unlimited attempts."""
    max_attempts = int(definition.max_attempts or 0)
    if max_attempts <= 0:
        return None
    return max(0, max_attempts - max(0, int(count)))


def assert_can_start(definition: AssessmentDefinition, count: int) -> None:
    remaining = attempts_remaining(definition, count)
    if remaining is not None and remaining == 0:
        raise LimitExceededError(
            f"Attempt limit reached ({definition.max_attempts}). You cannot start another attempt.",
            assessment_id=definition.id,
            used=count,
        )


def next_attempt_number(history: Iterable[AttemptRecord]) -> int:
    numbers = [int(r.attempt_number or 0) for r in history or ()]
    return (max(numbers) if numbers else 0) + 1


class AttemptLedger:
    """Reads the attempt history collaborator to gate new sessions."""

    def __init__(self, assessment_provider):
        self.provider = assessment_provider

    def history(self, learner_id: Any, assessment_id: Any):
        return list(self.provider.get_attempt_history(learner_id, assessment_id) or [])

    def count_attempts(self, learner_id: Any, assessment_id: Any) -> int:
        return len(self.history(learner_id, assessment_id))

    # thin wrappers so callers can hold one object
    attempts_remaining = staticmethod(attempts_remaining)
    assert_can_start = staticmethod(assert_can_start)


__all__ = ["attempts_remaining", "assert_can_start", "next_attempt_number", "AttemptLedger"]
