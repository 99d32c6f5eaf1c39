# gating.py
# -----------------------------------------------------------------------------
# Sequential lesson gating.
# - Lessons are flattened across sections (section order, then lesson order)
# - Lesson 0 is always open; lesson k opens once lesson k-1 is open AND completed
# - Completion flags are normalized to bool at the boundary (completion_map)
# -----------------------------------------------------------------------------
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from models import Lesson, Section, as_bool


def _order_key(value: Any):
    try:
        return (0, int(value))
    except (TypeError, ValueError):
        return (1, 0)


def sorted_sections(sections: Iterable[Section]) -> List[Section]:
    return sorted(list(sections or []), key=lambda s: (_order_key(s.order), str(s.title or "")))


def flatten_lessons(sections: Iterable[Section]) -> List[Lesson]:
    """Flatten sections into the single gating sequence."""
    out: List[Lesson] = []
    for s in sorted_sections(sections):
        lessons = sorted(list(s.lessons or ()), key=lambda l: (_order_key(l.order), str(l.id)))
        out.extend(lessons)
    return out


def completion_map(rows: Iterable[Any]) -> Dict[str, bool]:
    """
    Build {lesson_id: completed} from provider rows.
    Accepts dict rows ({"lesson_id", "completed"}), CompletionRecord objects or
    (lesson_id, flag) pairs. Later rows never flip a True back to False.
    """
    out: Dict[str, bool] = {}
    for r in rows or []:
        if isinstance(r, dict):
            lid, flag = r.get("lesson_id"), r.get("completed")
        elif isinstance(r, (tuple, list)) and len(r) == 2:
            lid, flag = r
        else:
            lid, flag = getattr(r, "lesson_id", None), getattr(r, "completed", None)
        if lid is None:
            continue
        key = str(lid)
        out[key] = out.get(key, False) or as_bool(flag)
    return out


def _is_completed(completions: Mapping[Any, bool], lesson_id: Any) -> bool:
    if lesson_id in completions:
        return bool(completions[lesson_id])
    return bool(completions.get(str(lesson_id), False))


def compute_unlocked(lessons: List[Lesson], completions: Mapping[Any, bool]) -> Set[Any]:
    """Return the ids of every lesson the learner may open right now."""
    unlocked: Set[Any] = set()
    prev: Optional[Lesson] = None
    for idx, lesson in enumerate(lessons or []):
        if idx == 0:
            unlocked.add(lesson.id)
        elif prev is not None and prev.id in unlocked and _is_completed(completions or {}, prev.id):
            unlocked.add(lesson.id)
        else:
            # everything past the first gap stays locked
            break
        prev = lesson
    return unlocked


def frontier_index(lessons: List[Lesson], completions: Mapping[Any, bool]) -> int:
    """Index of the furthest unlocked lesson, -1 for an empty course."""
    return len(compute_unlocked(lessons, completions)) - 1


class ProgressGate:
    """Gating over a content provider (sections + completion records)."""

    def __init__(self, content_provider):
        self.content = content_provider

    def lessons(self, course_id: Any) -> List[Lesson]:
        return flatten_lessons(self.content.get_sections(course_id))

    def completions(self, learner_id: Any, lessons: List[Lesson]) -> Dict[str, bool]:
        rows = self.content.get_completion_map(learner_id, [l.id for l in lessons])
        return completion_map(rows.items() if isinstance(rows, dict) else rows)

    def unlocked_lessons(self, course_id: Any, learner_id: Any) -> Set[Any]:
        lessons = self.lessons(course_id)
        return compute_unlocked(lessons, self.completions(learner_id, lessons))

    def is_unlocked(self, course_id: Any, learner_id: Any, lesson_id: Any) -> bool:
        unlocked = self.unlocked_lessons(course_id, learner_id)
        return lesson_id in unlocked or str(lesson_id) in {str(x) for x in unlocked}

    def lesson_states(self, course_id: Any, learner_id: Any) -> List[Dict[str, Any]]:
        lessons = self.lessons(course_id)
        done = self.completions(learner_id, lessons)
        unlocked = compute_unlocked(lessons, done)
        return [
            {**l.to_dict(), "unlocked": l.id in unlocked, "completed": _is_completed(done, l.id)}
            for l in lessons
        ]

    def complete_lesson(self, learner_id: Any, lesson_id: Any) -> None:
        """Mark a lesson completed. Completion is monotonic: it never reverts."""
        current = self.content.get_lesson_completion(learner_id, lesson_id) or {}
        if as_bool(current.get("completed")):
            return
        self.content.set_lesson_completion(learner_id, lesson_id)
        print(f"[gating] lesson {lesson_id} completed by learner {learner_id}", flush=True)


__all__ = [
    "sorted_sections",
    "flatten_lessons",
    "completion_map",
    "compute_unlocked",
    "frontier_index",
    "ProgressGate",
]
