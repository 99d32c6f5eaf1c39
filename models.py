# models.py
# -----------------------------------------------------------------------------
# Data model for lessons, assessment definitions and attempt records.
# - frozen dataclasses; rows and dicts are adapted at the boundary
# - truthy encodings (0/1, "true", BIT bytes) normalized by as_bool
# -----------------------------------------------------------------------------
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_PASS_THRESHOLD = 60

_TRUE_STRINGS = {"1", "true", "t", "yes", "y", "on"}


def as_bool(value: Any) -> bool:
    """Normalize the truthy encodings rows come back with (bool, 0/1, 'true', BIT bytes)."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (bytes, bytearray)):
        return any(value)
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Lesson:
    """One authored lesson; immutable once published."""

    id: Any
    section_id: Any = None
    order: int = 0
    type: str = "lesson"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Lesson":
        return cls(
            id=row.get("id", row.get("lesson_id")),
            section_id=row.get("section_id"),
            order=_int_or(row.get("order", row.get("position")), 0),
            type=str(row.get("type") or "lesson"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "section_id": self.section_id, "order": self.order, "type": self.type}


@dataclass(frozen=True)
class Section:
    """Ordered group of lessons."""

    id: Any
    order: int = 0
    title: str = ""
    lessons: Tuple[Lesson, ...] = ()


@dataclass(frozen=True)
class CompletionRecord:
    learner_id: Any
    lesson_id: Any
    completed: bool = False


@dataclass(frozen=True)
class Option:
    id: Any
    text: str = ""
    is_correct: bool = False

    def to_public(self) -> Dict[str, Any]:
        # never leak the answer key to the client
        return {"id": self.id, "text": self.text}


@dataclass(frozen=True)
class Question:
    id: Any
    text: str = ""
    options: Tuple[Option, ...] = ()

    def option(self, option_id: Any) -> Optional[Option]:
        for opt in self.options:
            if opt.id == option_id or str(opt.id) == str(option_id):
                return opt
        return None

    def correct_option_ids(self) -> List[Any]:
        return [opt.id for opt in self.options if opt.is_correct]

    def to_public(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "options": [o.to_public() for o in self.options]}


@dataclass(frozen=True)
class AssessmentDefinition:
    """Authored assessment: questions plus the time, pass and attempt policy.

    ``time_limit_minutes == 0`` and ``max_attempts == 0`` both mean unlimited.
    """

    id: Any
    questions: Tuple[Question, ...] = ()
    time_limit_minutes: int = 0
    pass_threshold: int = DEFAULT_PASS_THRESHOLD
    max_attempts: int = 0
    lesson_id: Any = None
    title: str = ""

    @property
    def time_limit_seconds(self) -> int:
        return max(0, int(self.time_limit_minutes)) * 60

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_pass_threshold: int = DEFAULT_PASS_THRESHOLD) -> "AssessmentDefinition":
        questions = []
        for q in data.get("questions") or []:
            options = tuple(
                Option(
                    id=o.get("id"),
                    text=str(o.get("text") or ""),
                    is_correct=as_bool(o.get("is_correct", o.get("correct"))),
                )
                for o in (q.get("options") or [])
            )
            questions.append(Question(id=q.get("id"), text=str(q.get("text") or ""), options=options))
        threshold = data.get("pass_threshold")
        return cls(
            id=data.get("id"),
            questions=tuple(questions),
            time_limit_minutes=max(0, _int_or(data.get("time_limit_minutes"), 0)),
            pass_threshold=_int_or(threshold, default_pass_threshold) if threshold is not None else default_pass_threshold,
            max_attempts=max(0, _int_or(data.get("max_attempts"), 0)),
            lesson_id=data.get("lesson_id"),
            title=str(data.get("title") or ""),
        )


@dataclass(frozen=True)
class AnswerEntry:
    """One immutable line of the answer log."""

    question_index: int
    question_id: Any
    option_id: Any
    is_correct: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_index": self.question_index,
            "question_id": self.question_id,
            "option_id": self.option_id,
            "is_correct": self.is_correct,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnswerEntry":
        return cls(
            question_index=int(data["question_index"]),
            question_id=data.get("question_id"),
            option_id=data.get("option_id"),
            is_correct=as_bool(data.get("is_correct")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"questionId": self.question_id, "optionId": self.option_id, "correct": self.is_correct}


@dataclass(frozen=True)
class AttemptRecord:
    """Append-only result of one finished attempt."""

    learner_id: Any
    assessment_id: Any
    percentage: int
    time_used_seconds: int
    answers: Tuple[AnswerEntry, ...] = ()
    passed: bool = False
    timestamp: float = field(default_factory=time.time)
    session_uid: Optional[str] = None
    attempt_number: Optional[int] = None
    expired: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """JSON shape submitted to the attempt history collaborator."""
        return {
            "percentage": int(self.percentage),
            "time_used_seconds": int(self.time_used_seconds),
            "answers": [a.to_payload() for a in self.answers],
            "passed": bool(self.passed),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AttemptRecord":
        created = row.get("created_at")
        if hasattr(created, "timestamp"):
            ts = created.timestamp()
        else:
            ts = float(created or 0.0)
        raw = row.get("answers") or []
        if isinstance(raw, str):
            raw = json.loads(raw)
        answers = []
        for a in raw:
            answers.append(AnswerEntry(
                question_index=int(a.get("question_index", len(answers))),
                question_id=a.get("questionId", a.get("question_id")),
                option_id=a.get("optionId", a.get("option_id")),
                is_correct=as_bool(a.get("correct", a.get("is_correct"))),
            ))
        return cls(
            learner_id=row.get("learner_id"),
            assessment_id=row.get("assessment_id"),
            percentage=_int_or(row.get("percentage"), 0),
            time_used_seconds=_int_or(row.get("time_used_seconds"), 0),
            answers=tuple(answers),
            passed=as_bool(row.get("passed")),
            timestamp=ts,
            session_uid=row.get("session_uid"),
            attempt_number=_int_or(row.get("attempt_number"), 0) or None,
        )


__all__ = [
    "DEFAULT_PASS_THRESHOLD",
    "as_bool",
    "Lesson",
    "Section",
    "CompletionRecord",
    "Option",
    "Question",
    "AssessmentDefinition",
    "AnswerEntry",
    "AttemptRecord",
]
