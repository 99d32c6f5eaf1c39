import sys
from dataclasses import replace
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import NetworkError  # noqa: E402
from models import AssessmentDefinition, Lesson, Section  # noqa: E402


T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class FakeAssessmentProvider:
    """In-memory attempt history keyed by (learner, assessment)."""

    def __init__(self, definitions=()):
        self.definitions = {str(d.id): d for d in definitions}
        self.attempts = []
        self.submit_calls = 0
        self.fail_submits = 0

    def get_assessment_definition(self, assessment_id):
        return self.definitions.get(str(assessment_id))

    def get_attempt_history(self, learner_id, assessment_id):
        rows = [r for r in self.attempts
                if str(r.learner_id) == str(learner_id) and str(r.assessment_id) == str(assessment_id)]
        return sorted(rows, key=lambda r: r.attempt_number or 0, reverse=True)

    def submit_attempt(self, learner_id, assessment_id, record):
        self.submit_calls += 1
        if self.fail_submits:
            self.fail_submits -= 1
            raise NetworkError("attempt history unreachable")
        for existing in self.attempts:
            if record.session_uid and existing.session_uid == record.session_uid:
                return existing
        number = len(self.get_attempt_history(learner_id, assessment_id)) + 1
        stored = replace(record, attempt_number=number)
        self.attempts.append(stored)
        return stored


class FakeContentProvider:
    def __init__(self, sections=(), completed=()):
        self.sections = list(sections)
        self.completed = {str(x) for x in completed}
        self.writes = []

    def get_sections(self, course_id):
        return self.sections

    def get_lesson_completion(self, learner_id, lesson_id):
        return {"completed": str(lesson_id) in self.completed}

    def get_completion_map(self, learner_id, lesson_ids):
        return {str(l): str(l) in self.completed for l in lesson_ids}

    def set_lesson_completion(self, learner_id, lesson_id):
        self.writes.append((learner_id, lesson_id))
        self.completed.add(str(lesson_id))


def build_definition(assessment_id="quiz-1", questions=5, time_limit_minutes=0,
                     max_attempts=0, pass_threshold=60, lesson_id=None):
    """Question i has options 'a' (correct) and 'b'."""
    return AssessmentDefinition.from_dict({
        "id": assessment_id,
        "title": "Quiz",
        "time_limit_minutes": time_limit_minutes,
        "max_attempts": max_attempts,
        "pass_threshold": pass_threshold,
        "lesson_id": lesson_id,
        "questions": [
            {
                "id": f"q{i}",
                "text": f"Question {i}",
                "options": [
                    {"id": "a", "text": "right", "is_correct": True},
                    {"id": "b", "text": "wrong", "is_correct": False},
                ],
            }
            for i in range(1, questions + 1)
        ],
    })


def build_sections():
    """Two sections, three lessons: L1, L2 | L3 (the quiz lesson)."""
    return [
        Section(id=2, order=2, title="Part 2", lessons=(Lesson(id="L3", section_id=2, order=1, type="quiz"),)),
        Section(id=1, order=1, title="Part 1", lessons=(
            Lesson(id="L2", section_id=1, order=2),
            Lesson(id="L1", section_id=1, order=1),
        )),
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_definition():
    return build_definition


@pytest.fixture
def sections():
    return build_sections()


@pytest.fixture
def assessment_provider():
    return FakeAssessmentProvider()


@pytest.fixture
def content_provider(sections):
    return FakeContentProvider(sections)
