import pytest

from assessment import (
    ACTIVE, ADVANCE, ANSWER, CLAIM, COMPLETED, EXPIRED, FINALIZE, INFORMING, INSTALL_GUARD, START,
    START_CLOCK, TICK, AssessmentSession, Event, SessionManager, SessionState, transition,
)
from conftest import T0, FakeAssessmentProvider, build_definition
from errors import (
    ConcurrencyError, LimitExceededError, NetworkError, StorageError, TimeExpiredError, ValidationError,
)
from models import AssessmentDefinition, AttemptRecord
from snapshot import MemorySnapshotStore


def _manager(provider, store, clock, content=None):
    return SessionManager(store, provider, content_provider=content, now=clock)


def _run(session, picks):
    """Answer each question with the given option id and advance."""
    for option_id in picks:
        session.answer(option_id)
        session.advance()


# ---- pure transitions --------------------------------------------------------
def test_start_effects_depend_on_time_limit():
    s = SessionState(assessment_id="quiz-1", learner_id=7, session_uid="u1")
    ns, effects = transition(s, build_definition(time_limit_minutes=10), Event(START, now=T0))
    assert ns.state == ACTIVE and ns.start_instant == T0
    assert effects == [CLAIM, INSTALL_GUARD, START_CLOCK]

    _, effects = transition(s, build_definition(time_limit_minutes=0), Event(START, now=T0))
    assert START_CLOCK not in effects


def test_invalid_events_are_no_ops():
    definition = build_definition()
    s = SessionState(assessment_id="quiz-1", learner_id=7, session_uid="u1")
    for event in (Event(ANSWER, now=T0, option_id="a"), Event(ADVANCE, now=T0), Event(TICK, now=T0)):
        assert transition(s, definition, event) == (s, [])

    done = SessionState(assessment_id="quiz-1", learner_id=7, session_uid="u1", state=COMPLETED, start_instant=T0)
    assert transition(done, definition, Event(START, now=T0)) == (done, [])


def test_tick_past_deadline_expires_at_the_deadline():
    definition = build_definition(time_limit_minutes=10)
    s = SessionState(assessment_id="quiz-1", learner_id=7, session_uid="u1", state=ACTIVE, start_instant=T0)
    assert transition(s, definition, Event(TICK, now=T0 + 599)) == (s, [])
    ns, effects = transition(s, definition, Event(TICK, now=T0 + 601))
    assert ns.state == EXPIRED
    assert ns.end_instant == T0 + 600
    assert effects == [FINALIZE]


# ---- full sessions -----------------------------------------------------------
def test_three_of_five_completes_with_sixty_percent(clock):
    provider = FakeAssessmentProvider([build_definition(questions=5, pass_threshold=60)])
    store = MemorySnapshotStore()
    mgr = _manager(provider, store, clock)

    session = mgr.create(provider.get_assessment_definition("quiz-1"), 7).start()
    assert session.guard.installed
    assert store.load()["start_instant"] == T0

    clock.advance(42)
    _run(session, ["a", "a", "a", "b", "b"])

    assert session.state == COMPLETED
    assert len(provider.attempts) == 1
    record = provider.attempts[0]
    assert (record.percentage, record.passed, record.time_used_seconds) == (60, True, 42)
    assert record.attempt_number == 1
    assert [a["optionId"] for a in record.to_payload()["answers"]] == ["a", "a", "a", "b", "b"]
    assert store.load() is None
    assert not session.guard.installed
    assert mgr.current is None


def test_expiry_finalizes_once_with_capped_time(clock):
    provider = FakeAssessmentProvider([build_definition(questions=3, time_limit_minutes=10)])
    store = MemorySnapshotStore()
    session = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()

    session.answer("a")
    clock.advance(601)
    assert session.on_tick() == 0

    assert session.state == EXPIRED
    assert len(provider.attempts) == 1
    record = provider.attempts[0]
    assert record.time_used_seconds == 600
    assert record.percentage == 33
    assert record.expired
    assert store.load() is None

    session.on_tick()
    assert session.finalize(expired=True) is session.record
    assert provider.submit_calls == 1


def test_answer_after_deadline_raises_time_expired(clock):
    provider = FakeAssessmentProvider([build_definition(questions=2, time_limit_minutes=1)])
    session = _manager(provider, MemorySnapshotStore(), clock).create(
        provider.get_assessment_definition("quiz-1"), 7).start()

    clock.advance(90)
    with pytest.raises(TimeExpiredError):
        session.answer("a")
    assert session.state == EXPIRED
    assert provider.attempts[0].answers == ()
    assert provider.attempts[0].time_used_seconds == 60


def test_attempt_limit_refuses_before_any_state(clock):
    provider = FakeAssessmentProvider([build_definition(max_attempts=2)])
    for n in (1, 2):
        provider.attempts.append(AttemptRecord(learner_id=7, assessment_id="quiz-1", percentage=0,
                                               time_used_seconds=5, session_uid=f"old-{n}", attempt_number=n))
    store = MemorySnapshotStore()
    with pytest.raises(LimitExceededError):
        _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7)
    assert store.saves == 0
    assert store.load() is None


def test_attempts_remaining_reported_on_the_session(clock):
    provider = FakeAssessmentProvider([build_definition(max_attempts=3)])
    provider.attempts.append(AttemptRecord(learner_id=7, assessment_id="quiz-1", percentage=0,
                                           time_used_seconds=5, session_uid="old", attempt_number=1))
    session = _manager(provider, MemorySnapshotStore(), clock).create(provider.get_assessment_definition("quiz-1"), 7)
    assert session.attempts_remaining == 2
    assert session.state == INFORMING


def test_answers_are_final_and_options_validated(clock):
    provider = FakeAssessmentProvider([build_definition(questions=2)])
    session = _manager(provider, MemorySnapshotStore(), clock).create(
        provider.get_assessment_definition("quiz-1"), 7).start()

    with pytest.raises(ValidationError):
        session.answer("zzz")
    assert session.advance() is False

    feedback = session.answer("b")
    assert feedback == {"question_index": 0, "option_id": "b", "correct": False, "correct_option_ids": ["a"]}
    assert session.answer("a") is None
    assert session.data.score == 0

    assert session.advance() is True
    assert session.view(0)["selected_option_id"] == "b"
    assert session.view(0)["locked"] is True
    assert session.view(1)["locked"] is False
    with pytest.raises(ValidationError):
        session.view(5)


def test_public_question_hides_the_answer_key(clock):
    provider = FakeAssessmentProvider([build_definition(questions=1)])
    session = _manager(provider, MemorySnapshotStore(), clock).create(
        provider.get_assessment_definition("quiz-1"), 7).start()
    options = session.to_public()["question"]["question"]["options"]
    assert options == [{"id": "a", "text": "right"}, {"id": "b", "text": "wrong"}]


def test_definition_without_correct_option_is_rejected(clock):
    broken = AssessmentDefinition.from_dict({
        "id": "quiz-x",
        "questions": [{"id": "q1", "text": "?", "options": [{"id": "a", "text": "x"}]}],
    })
    store = MemorySnapshotStore()
    with pytest.raises(ValidationError):
        _manager(FakeAssessmentProvider([broken]), store, clock).create(broken, 7)
    with pytest.raises(ValidationError):
        _manager(FakeAssessmentProvider(), store, clock).create(AssessmentDefinition(id="empty"), 7)
    assert store.saves == 0


# ---- resume ------------------------------------------------------------------
def test_resume_mid_session_restores_question_and_clock(clock):
    provider = FakeAssessmentProvider([build_definition(questions=3, time_limit_minutes=10)])
    store = MemorySnapshotStore()
    first = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()
    first.answer("a")
    first.advance()

    clock.advance(30)
    resumed = _manager(provider, store, clock).resume()
    assert resumed.state == ACTIVE
    assert resumed.session_uid == first.session_uid
    assert resumed.data.question_index == 1
    assert resumed.remaining_seconds() == 570
    assert resumed.guard.installed


def test_resume_past_deadline_finalizes_as_expired(clock):
    provider = FakeAssessmentProvider([build_definition(questions=3, time_limit_minutes=10)])
    store = MemorySnapshotStore()
    _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start().answer("a")

    clock.advance(3600)
    resumed = _manager(provider, store, clock).resume()

    assert resumed.state == EXPIRED
    assert resumed.is_finished
    assert len(provider.attempts) == 1
    assert provider.attempts[0].time_used_seconds == 600
    assert store.load() is None
    assert _manager(provider, store, clock).resume() is None


def test_network_failure_keeps_snapshot_and_retry_records_once(clock):
    provider = FakeAssessmentProvider([build_definition(questions=2)])
    provider.fail_submits = 1
    store = MemorySnapshotStore()
    mgr = _manager(provider, store, clock)
    session = mgr.create(provider.get_assessment_definition("quiz-1"), 7).start()

    _run(session, ["a", "a"])
    assert isinstance(session.pending_error, NetworkError)
    assert not session.is_finished
    assert provider.attempts == []
    snap = store.load()
    assert snap["state"] == COMPLETED and snap["finalized"] is False

    # a second session cannot start while the result is pending
    with pytest.raises(ConcurrencyError):
        _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7)

    retried = mgr.resume()
    assert retried is session
    assert session.is_finished
    assert session.record.percentage == 100
    assert len(provider.attempts) == 1
    assert store.load() is None


def test_lost_acknowledgement_does_not_duplicate_the_record(clock):
    class LostAck(FakeAssessmentProvider):
        def submit_attempt(self, learner_id, assessment_id, record):
            stored = super().submit_attempt(learner_id, assessment_id, record)
            if self.submit_calls == 1:
                raise NetworkError("timeout after commit")
            return stored

    provider = LostAck([build_definition(questions=1)])
    store = MemorySnapshotStore()
    session = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()
    _run(session, ["a"])
    assert session.pending_error is not None

    resumed = _manager(provider, store, clock).resume()
    assert resumed.is_finished
    assert provider.submit_calls == 2
    assert len(provider.attempts) == 1
    assert resumed.record.attempt_number == 1


def test_unusable_snapshot_is_dropped(clock, capsys):
    provider = FakeAssessmentProvider([build_definition()])
    store = MemorySnapshotStore()
    store.save({"assessment_id": "quiz-1", "state": "paused"})
    assert _manager(provider, store, clock).resume() is None
    assert store.load() is None
    assert "dropping unusable snapshot" in capsys.readouterr().out


def test_snapshot_for_missing_assessment_is_dropped(clock):
    store = MemorySnapshotStore()
    store.save({"assessment_id": "gone", "state": "active", "start_instant": T0})
    assert _manager(FakeAssessmentProvider(), store, clock).resume() is None
    assert store.load() is None


# ---- concurrency -------------------------------------------------------------
def test_second_session_refused_while_one_is_active(clock):
    provider = FakeAssessmentProvider([build_definition("quiz-1"), build_definition("quiz-2")])
    store = MemorySnapshotStore()
    mgr = _manager(provider, store, clock)
    first = mgr.create(provider.get_assessment_definition("quiz-1"), 7).start()

    with pytest.raises(ConcurrencyError):
        mgr.create(provider.get_assessment_definition("quiz-2"), 7)
    assert mgr.current is first
    assert store.load()["assessment_id"] == "quiz-1"


def test_concurrent_starts_cannot_share_the_slot(clock):
    provider = FakeAssessmentProvider([build_definition()])
    store = MemorySnapshotStore()
    definition = provider.get_assessment_definition("quiz-1")
    # both pass the create-time check before either has started
    a = _manager(provider, store, clock).create(definition, 7)
    b = _manager(provider, store, clock).create(definition, 7)

    a.start()
    with pytest.raises(ConcurrencyError):
        b.start()

    assert b.state == INFORMING
    assert not b.guard.installed
    assert store.load()["session_uid"] == a.session_uid
    assert _manager(provider, store, clock).resume().session_uid == a.session_uid


# ---- resume against a changed definition -------------------------------------
def test_resume_into_a_shrunk_definition_completes_the_attempt(clock, capsys):
    provider = FakeAssessmentProvider([build_definition(questions=4), build_definition("quiz-2")])
    store = MemorySnapshotStore()
    session = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()
    _run(session, ["a", "b", "a"])
    assert store.load()["question_index"] == 3

    provider.definitions["quiz-1"] = build_definition(questions=2)
    resumed = _manager(provider, store, clock).resume()

    assert resumed.state == COMPLETED
    assert resumed.is_finished
    assert resumed.data.question_index == 2
    assert [a.question_index for a in resumed.data.answers] == [0, 1]
    assert provider.attempts[0].percentage == 50
    assert store.load() is None
    assert "definition now has 2 questions" in capsys.readouterr().out

    other = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-2"), 7).start()
    assert other.state == ACTIVE


def test_resume_at_the_last_question_of_a_shrunk_definition(clock):
    provider = FakeAssessmentProvider([build_definition(questions=3)])
    store = MemorySnapshotStore()
    session = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()
    _run(session, ["a", "a"])

    provider.definitions["quiz-1"] = build_definition(questions=2)
    resumed = _manager(provider, store, clock).resume()
    assert resumed.state == COMPLETED
    assert provider.attempts[0].percentage == 100
    assert store.load() is None


def test_resume_accepts_an_instant_alongside_a_clock(clock):
    provider = FakeAssessmentProvider([build_definition(questions=2, time_limit_minutes=10)])
    store = MemorySnapshotStore()
    _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()

    resumed = AssessmentSession.resume(store.load(), provider.get_assessment_definition("quiz-1"),
                                       store, provider, T0 + 30, now=clock)
    assert resumed.state == ACTIVE
    assert resumed.remaining_seconds(T0 + 30) == 570
    assert resumed.now is clock


# ---- storage failures --------------------------------------------------------
def test_permanent_storage_error_is_raised_and_the_snapshot_kept(clock):
    class Rejecting(FakeAssessmentProvider):
        def submit_attempt(self, learner_id, assessment_id, record):
            self.submit_calls += 1
            raise StorageError("attempt rejected by a constraint")

    provider = Rejecting([build_definition(questions=1)])
    store = MemorySnapshotStore()
    session = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()
    session.answer("a")

    with pytest.raises(StorageError):
        session.advance()

    assert isinstance(session.pending_error, StorageError)
    assert not session.is_finished
    assert not session.guard.installed
    snap = store.load()
    assert snap["state"] == COMPLETED and snap["finalized"] is False


# ---- logging -----------------------------------------------------------------
def test_guard_install_is_logged_on_start_only(clock, capsys):
    provider = FakeAssessmentProvider([build_definition(questions=2, time_limit_minutes=10)])
    store = MemorySnapshotStore()
    first = _manager(provider, store, clock).create(provider.get_assessment_definition("quiz-1"), 7).start()
    assert f"[guard] installed for session {first.session_uid}" in capsys.readouterr().out

    for _ in range(3):
        clock.advance(1)
        resumed = _manager(provider, store, clock).resume()
        assert resumed.guard.installed
    assert "[guard] installed" not in capsys.readouterr().out
