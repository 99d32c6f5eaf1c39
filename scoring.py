# scoring.py
# -----------------------------------------------------------------------------
# Pure scoring of an answer log.
# - first answer per question counts, unanswered questions count as wrong
# - percentage rounds half up; passed = percentage >= threshold (default 60)
# -----------------------------------------------------------------------------
from dataclasses import dataclass
from typing import Iterable, Optional

from models import DEFAULT_PASS_THRESHOLD, AnswerEntry


@dataclass(frozen=True)
class ScoreResult:
    percentage: int
    passed: bool
    correct: int
    total: int

    def to_dict(self):
        return {"percentage": self.percentage, "passed": self.passed, "correct": self.correct, "total": self.total}


def correct_count(answers: Iterable[AnswerEntry]) -> int:
    """Count correct answers; only the first answer logged for a question counts."""
    seen = set()
    n = 0
    for a in answers or ():
        if a.question_index in seen:
            continue
        seen.add(a.question_index)
        if a.is_correct:
            n += 1
    return n


def percent_half_up(correct: int, total: int) -> int:
    """round(correct / total * 100) with .5 rounding up, in integer arithmetic."""
    if total <= 0:
        return 0
    return (200 * correct + total) // (2 * total)


def evaluate(answers: Iterable[AnswerEntry], total_questions: int, pass_threshold: Optional[int] = None) -> ScoreResult:
    threshold = DEFAULT_PASS_THRESHOLD if pass_threshold is None else int(pass_threshold)
    correct = min(correct_count(answers), max(0, int(total_questions)))
    percentage = percent_half_up(correct, int(total_questions))
    return ScoreResult(percentage=percentage, passed=percentage >= threshold, correct=correct, total=int(total_questions))


__all__ = ["ScoreResult", "correct_count", "percent_half_up", "evaluate"]
