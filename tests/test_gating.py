import gating
from gating import ProgressGate, completion_map, compute_unlocked, flatten_lessons, frontier_index
from models import CompletionRecord, Lesson


def test_flatten_orders_by_section_then_lesson(sections):
    assert [l.id for l in flatten_lessons(sections)] == ["L1", "L2", "L3"]


def test_first_lesson_always_unlocked(sections):
    lessons = flatten_lessons(sections)
    assert compute_unlocked(lessons, {}) == {"L1"}
    assert frontier_index(lessons, {}) == 0


def test_unlocks_follow_completion_chain(sections):
    lessons = flatten_lessons(sections)
    assert compute_unlocked(lessons, {"L1": True}) == {"L1", "L2"}
    assert compute_unlocked(lessons, {"L1": True, "L2": True}) == {"L1", "L2", "L3"}


def test_gap_keeps_everything_after_it_locked(sections):
    lessons = flatten_lessons(sections)
    # L2 done but L1 not: only L1 is open
    assert compute_unlocked(lessons, {"L2": True}) == {"L1"}


def test_empty_course_has_no_frontier():
    assert compute_unlocked([], {}) == set()
    assert frontier_index([], {}) == -1


def test_completion_map_normalizes_flags_and_is_monotonic():
    rows = [
        {"lesson_id": 1, "completed": "true"},
        {"lesson_id": 2, "completed": 0},
        ("3", b"\x01"),
        CompletionRecord(learner_id=7, lesson_id=4, completed=True),
        {"lesson_id": 1, "completed": False},
    ]
    assert completion_map(rows) == {"1": True, "2": False, "3": True, "4": True}


def test_integer_lesson_ids_match_string_keys():
    lessons = [Lesson(id=10, order=1), Lesson(id=11, order=2)]
    assert compute_unlocked(lessons, {"10": True}) == {10, 11}


def test_gate_lesson_states(content_provider):
    content_provider.completed = {"L1"}
    states = ProgressGate(content_provider).lesson_states(1, 7)
    assert [(s["id"], s["unlocked"], s["completed"]) for s in states] == [
        ("L1", True, True),
        ("L2", True, False),
        ("L3", False, False),
    ]


def test_complete_lesson_is_monotonic(content_provider, capsys):
    gate = ProgressGate(content_provider)
    gate.complete_lesson(7, "L1")
    gate.complete_lesson(7, "L1")

    assert content_provider.writes == [(7, "L1")]
    assert gate.is_unlocked(1, 7, "L2")
    assert not gate.is_unlocked(1, 7, "L3")
    assert "[gating] lesson L1 completed" in capsys.readouterr().out


def test_sorted_sections_tolerates_missing_order(sections):
    from models import Section

    odd = Section(id=9, order=None, title="Appendix")
    ordered = gating.sorted_sections(list(sections) + [odd])
    assert [s.id for s in ordered] == [1, 2, 9]
