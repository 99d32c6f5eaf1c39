# assessment.py
# -----------------------------------------------------------------------------
# Timed assessment session: informing -> active -> {completed | expired}
# - transition(state, definition, event) is pure and returns (state', effects)
# - AssessmentSession runs the effects: claim, persist, guard, clock, finalize
# - START claims the slot atomically; losing the claim is a ConcurrencyError
# - finalize writes exactly one attempt record (keyed by session_uid), then
#   clears the snapshot; on NetworkError the snapshot stays for a retry
# - SessionManager owns the single slot and refuses a second live session
# -----------------------------------------------------------------------------
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from clock import CountdownClock, remaining, time_used
from errors import (
    AssessmentError, ConcurrencyError, LessonLockedError, LimitExceededError,
    NetworkError, TimeExpiredError, ValidationError,
)
from gating import ProgressGate
from guard import NavigationGuard
from ledger import AttemptLedger, assert_can_start, attempts_remaining
from models import AnswerEntry, AssessmentDefinition, AttemptRecord
from scoring import evaluate

# ---- states ------------------------------------------------------------------
INFORMING = "informing"
ACTIVE = "active"
COMPLETED = "completed"
EXPIRED = "expired"
TERMINAL_STATES = (COMPLETED, EXPIRED)

# ---- events ------------------------------------------------------------------
START = "start"
ANSWER = "answer"
ADVANCE = "advance"
TICK = "tick"
EXPIRE = "expire"

# ---- effects -----------------------------------------------------------------
CLAIM = "claim"
PERSIST = "persist"
INSTALL_GUARD = "install_guard"
START_CLOCK = "start_clock"
FINALIZE = "finalize"


@dataclass(frozen=True)
class Event:
    kind: str
    now: Optional[float] = None
    option_id: Any = None


@dataclass(frozen=True)
class SessionState:
    assessment_id: Any
    learner_id: Any
    session_uid: str
    state: str = INFORMING
    question_index: int = 0
    score: int = 0
    answers: Tuple[AnswerEntry, ...] = ()
    start_instant: Optional[float] = None
    end_instant: Optional[float] = None
    finalized: bool = False

    @property
    def answered(self) -> bool:
        """Whether the current question already has its (final) answer."""
        return any(a.question_index == self.question_index for a in self.answers)

    def answer_for(self, index: int) -> Optional[AnswerEntry]:
        for a in self.answers:
            if a.question_index == index:
                return a
        return None

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "assessment_id": self.assessment_id,
            "learner_id": self.learner_id,
            "session_uid": self.session_uid,
            "state": self.state,
            "question_index": self.question_index,
            "score": self.score,
            "answers": [a.to_dict() for a in self.answers],
            "start_instant": self.start_instant,
            "end_instant": self.end_instant,
            "finalized": self.finalized,
        }

    @classmethod
    def from_snapshot(cls, snap: Dict[str, Any]) -> "SessionState":
        state = snap.get("state") or ACTIVE
        if state not in (INFORMING, ACTIVE) + TERMINAL_STATES:
            raise ValidationError(f"Unknown session state {state!r} in snapshot.")
        if snap.get("start_instant") is None and state != INFORMING:
            raise ValidationError("Snapshot has no start instant.")
        return cls(
            assessment_id=snap.get("assessment_id"),
            learner_id=snap.get("learner_id"),
            session_uid=str(snap.get("session_uid") or uuid.uuid4().hex),
            state=state,
            question_index=int(snap.get("question_index") or 0),
            score=int(snap.get("score") or 0),
            answers=tuple(AnswerEntry.from_dict(a) for a in (snap.get("answers") or [])),
            start_instant=float(snap["start_instant"]) if snap.get("start_instant") is not None else None,
            end_instant=float(snap["end_instant"]) if snap.get("end_instant") is not None else None,
            finalized=bool(snap.get("finalized")),
        )


def validate_definition(definition: AssessmentDefinition) -> None:
    """
    Reject definitions that cannot be scored: no questions, a question without
    options, or a question without any correct option. Several correct options
    are accepted (any of them scores) and only logged.
    """
    if definition is None:
        raise ValidationError("Assessment not found.")
    if not definition.questions:
        raise ValidationError("This assessment has no questions.", assessment_id=definition.id)
    for idx, q in enumerate(definition.questions, start=1):
        if not q.options:
            raise ValidationError(f"Question {idx} has no options.", assessment_id=definition.id)
        correct = q.correct_option_ids()
        if not correct:
            raise ValidationError(f"Question {idx} has no correct option.", assessment_id=definition.id)
        if len(correct) > 1:
            print(f"[assessment] {definition.id}: question {idx} has {len(correct)} correct options", flush=True)


def _fit_to_definition(s: SessionState, definition: AssessmentDefinition) -> SessionState:
    """Trim a resumed state to the questions the definition still has."""
    total = definition.total_questions
    if s.question_index <= total and all(a.question_index < total for a in s.answers):
        return s
    answers = tuple(a for a in s.answers if a.question_index < total)
    print(f"[assessment] session {s.session_uid}: definition now has {total} questions, "
          f"snapshot was at {s.question_index + 1}", flush=True)
    return replace(
        s,
        question_index=min(s.question_index, total),
        answers=answers,
        score=sum(1 for a in answers if a.is_correct),
    )


def transition(s: SessionState, definition: AssessmentDefinition, event: Event) -> Tuple[SessionState, List[str]]:
    """Pure state transition. Events that are not valid in the current state are no-ops."""
    kind = event.kind
    total = definition.total_questions
    limit = definition.time_limit_seconds

    if kind == START:
        if s.state != INFORMING:
            return s, []
        ns = replace(s, state=ACTIVE, start_instant=event.now, question_index=0, score=0, answers=())
        effects = [CLAIM, INSTALL_GUARD]
        if limit > 0:
            effects.append(START_CLOCK)
        return ns, effects

    if s.state != ACTIVE:
        return s, []

    if kind == ANSWER:
        if s.answered or s.question_index >= total:
            return s, []
        q = definition.questions[s.question_index]
        opt = q.option(event.option_id)
        if opt is None:
            raise ValidationError(f"Unknown option {event.option_id!r} for question {s.question_index + 1}.")
        entry = AnswerEntry(
            question_index=s.question_index,
            question_id=q.id,
            option_id=opt.id,
            is_correct=bool(opt.is_correct),
        )
        ns = replace(s, answers=s.answers + (entry,), score=s.score + (1 if opt.is_correct else 0))
        return ns, [PERSIST]

    if kind == ADVANCE:
        if not s.answered:
            return s, []
        idx = s.question_index + 1
        if idx >= total:
            return replace(s, question_index=idx, state=COMPLETED, end_instant=event.now), [FINALIZE]
        return replace(s, question_index=idx), [PERSIST]

    if kind == TICK:
        if limit <= 0 or s.start_instant is None:
            return s, []
        if remaining(s.start_instant, limit, event.now) > 0:
            return s, []
        kind = EXPIRE

    if kind == EXPIRE:
        end = event.now
        if limit > 0 and s.start_instant is not None and end is not None:
            end = min(end, s.start_instant + limit)
        return replace(s, state=EXPIRED, end_instant=end), [FINALIZE]

    return s, []


class AssessmentSession:
    """Runs one attempt: applies transitions and executes their side effects."""

    def __init__(self, definition: AssessmentDefinition, state: SessionState, store, assessment_provider,
                 guard: Optional[NavigationGuard] = None, clock: Optional[CountdownClock] = None,
                 now: Callable[[], float] = time.time, attempts_remaining: Optional[int] = None,
                 on_finished: Optional[Callable[["AssessmentSession"], None]] = None):
        self.definition = definition
        self.data = state
        self.store = store
        self.provider = assessment_provider
        self.guard = guard or NavigationGuard()
        self.clock = clock or CountdownClock(definition.time_limit_seconds)
        self.now = now
        self.attempts_remaining = attempts_remaining
        self.on_finished = on_finished
        self.record: Optional[AttemptRecord] = None
        self.pending_error: Optional[AssessmentError] = None
        self._lock = threading.RLock()

    # ---- construction ----------------------------------------------------------
    @classmethod
    def create(cls, definition: AssessmentDefinition, learner_id: Any, attempts_remaining: Optional[int],
               store, assessment_provider, **kwargs) -> "AssessmentSession":
        if attempts_remaining is not None and attempts_remaining <= 0:
            raise LimitExceededError("No attempts remaining for this assessment.", assessment_id=getattr(definition, "id", None))
        validate_definition(definition)
        state = SessionState(assessment_id=definition.id, learner_id=learner_id, session_uid=uuid.uuid4().hex)
        return cls(definition, state, store, assessment_provider, attempts_remaining=attempts_remaining, **kwargs)

    @classmethod
    def resume(cls, snapshot: Dict[str, Any], definition: AssessmentDefinition, store, assessment_provider,
               at: Optional[float] = None, **kwargs) -> "AssessmentSession":
        """Rehydrate from a snapshot and immediately re-evaluate the deadline."""
        state = SessionState.from_snapshot(snapshot)
        if str(state.assessment_id) != str(definition.id):
            raise ValidationError("Snapshot belongs to a different assessment.")
        state = _fit_to_definition(state, definition)
        session = cls(definition, state, store, assessment_provider, **kwargs)
        at = session._now(at)
        if state.state == ACTIVE:
            session.guard.install()
            session.clock.start(session._on_clock_tick)
            session.on_tick(at)
            if session.data.state == ACTIVE and session.data.question_index >= definition.total_questions:
                # nothing left to answer: the definition shrank under this attempt
                session.finalize(expired=False, now=at)
        elif state.state in TERMINAL_STATES and not state.finalized:
            print(f"[assessment] retrying finalize for session {state.session_uid}", flush=True)
            session.finalize(expired=state.state == EXPIRED, now=at)
        return session

    # ---- read-only views -------------------------------------------------------
    def _now(self, now: Optional[float] = None) -> float:
        return float(self.now() if now is None else now)

    @property
    def state(self) -> str:
        return self.data.state

    @property
    def session_uid(self) -> str:
        return self.data.session_uid

    @property
    def is_active(self) -> bool:
        return self.data.state == ACTIVE

    @property
    def is_finished(self) -> bool:
        return self.data.finalized

    def remaining_seconds(self, now: Optional[float] = None) -> Optional[int]:
        if self.data.start_instant is None or self.definition.time_limit_seconds <= 0:
            return None
        if self.data.state in TERMINAL_STATES:
            return 0 if self.data.state == EXPIRED else None
        return remaining(self.data.start_instant, self.definition.time_limit_seconds, self._now(now))

    def current_question(self) -> Optional[Dict[str, Any]]:
        if self.data.state != ACTIVE or self.data.question_index >= self.definition.total_questions:
            return None
        return self.view(self.data.question_index)

    def view(self, index: int) -> Dict[str, Any]:
        """View any question already reached, with its locked answer (if any)."""
        index = int(index)
        if index < 0 or index >= self.definition.total_questions or index > self.data.question_index:
            raise ValidationError(f"Question {index + 1} is not available.")
        entry = self.data.answer_for(index)
        return {
            "index": index,
            "number": index + 1,
            "total": self.definition.total_questions,
            "question": self.definition.questions[index].to_public(),
            "selected_option_id": entry.option_id if entry else None,
            "locked": entry is not None,
        }

    def to_public(self, now: Optional[float] = None) -> Dict[str, Any]:
        out = {
            "session_uid": self.data.session_uid,
            "assessment_id": self.data.assessment_id,
            "state": self.data.state,
            "question_index": self.data.question_index,
            "total_questions": self.definition.total_questions,
            "answered": self.data.answered,
            "time_limit_seconds": self.definition.time_limit_seconds,
            "remaining_seconds": self.remaining_seconds(now),
            "pass_threshold": self.definition.pass_threshold,
            "attempts_remaining": self.attempts_remaining,
            "question": self.current_question(),
            "finalized": self.data.finalized,
            "pending": bool(self.pending_error),
            "result": None,
        }
        if self.record is not None:
            out["result"] = dict(self.record.to_payload(), attempt_number=self.record.attempt_number)
        return out

    # ---- transitions -----------------------------------------------------------
    def _apply(self, event: Event) -> None:
        with self._lock:
            previous = self.data
            new_state, effects = transition(self.data, self.definition, event)
            self.data = new_state
            for effect in effects:
                if effect == CLAIM:
                    if not self.store.claim(self.data.to_snapshot()):
                        self.data = previous
                        print(f"[assessment] session {previous.session_uid} lost the slot to another start", flush=True)
                        raise ConcurrencyError(session_uid=previous.session_uid)
                elif effect == PERSIST:
                    self.store.save(self.data.to_snapshot())
                elif effect == INSTALL_GUARD:
                    self.guard.install()
                    print(f"[guard] installed for session {self.data.session_uid}", flush=True)
                elif effect == START_CLOCK:
                    self.clock.start(self._on_clock_tick)
                elif effect == FINALIZE:
                    self.finalize(expired=self.data.state == EXPIRED, now=event.now)

    def _on_clock_tick(self) -> None:
        self.on_tick(self._now())

    def _expire_check(self, now: float) -> None:
        self.on_tick(now)
        if self.data.state == EXPIRED:
            raise TimeExpiredError("Time is up. Your attempt was submitted automatically.",
                                   session_uid=self.data.session_uid)

    def start(self, now: Optional[float] = None) -> "AssessmentSession":
        at = self._now(now)
        self._apply(Event(START, now=at))
        print(f"[assessment] session {self.data.session_uid} started "
              f"(assessment={self.data.assessment_id}, learner={self.data.learner_id})", flush=True)
        return self

    def answer(self, option_id: Any, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Record the answer to the current question; later answers to the same question are ignored."""
        at = self._now(now)
        self._expire_check(at)
        if self.data.state != ACTIVE:
            return None
        before = len(self.data.answers)
        self._apply(Event(ANSWER, now=at, option_id=option_id))
        if len(self.data.answers) == before:
            return None
        entry = self.data.answers[-1]
        q = self.definition.questions[entry.question_index]
        return {
            "question_index": entry.question_index,
            "option_id": entry.option_id,
            "correct": entry.is_correct,
            "correct_option_ids": q.correct_option_ids(),
        }

    def advance(self, now: Optional[float] = None) -> bool:
        at = self._now(now)
        self._expire_check(at)
        if self.data.state != ACTIVE or not self.data.answered:
            return False
        self._apply(Event(ADVANCE, now=at))
        return True

    def on_tick(self, now: Optional[float] = None) -> Optional[int]:
        at = self._now(now)
        self._apply(Event(TICK, now=at))
        return self.remaining_seconds(at)

    # ---- finalize --------------------------------------------------------------
    def build_record(self) -> AttemptRecord:
        d = self.data
        result = evaluate(d.answers, self.definition.total_questions, self.definition.pass_threshold)
        end = d.end_instant if d.end_instant is not None else self._now()
        start = d.start_instant if d.start_instant is not None else end
        used = time_used(start, self.definition.time_limit_seconds, end)
        return AttemptRecord(
            learner_id=d.learner_id,
            assessment_id=d.assessment_id,
            percentage=result.percentage,
            time_used_seconds=used,
            answers=d.answers,
            passed=result.passed,
            timestamp=end,
            session_uid=d.session_uid,
            expired=d.state == EXPIRED,
        )

    def finalize(self, expired: bool = False, now: Optional[float] = None) -> Optional[AttemptRecord]:
        """
        Score, write one attempt record, clear the snapshot, drop guard and clock.
        A second call after success is a no-op returning the same record. Returns
        None while the write is pending (NetworkError). Permanent storage errors
        are re-raised. Either way the snapshot is kept and the next load retries.
        """
        with self._lock:
            if self.data.finalized:
                return self.record
            if self.data.state == INFORMING:
                return None
            if self.data.state == ACTIVE:
                at = self._now(now)
                limit = self.definition.time_limit_seconds
                if expired and limit > 0 and self.data.start_instant is not None:
                    at = min(at, self.data.start_instant + limit)
                self.data = replace(self.data, state=EXPIRED if expired else COMPLETED, end_instant=at)
            self.clock.cancel()

            record = self.build_record()
            try:
                # terminal snapshot first: a crash during the write resumes into a retry
                self.store.save(self.data.to_snapshot())
                stored = self.provider.submit_attempt(self.data.learner_id, self.data.assessment_id, record)
            except AssessmentError as e:
                self.pending_error = e
                self.guard.remove()
                print(f"[assessment] finalize deferred for session {self.data.session_uid}: {e}", flush=True)
                if e.retryable:
                    return None
                raise

            self.pending_error = None
            self.data = replace(self.data, finalized=True)
            self.record = stored if isinstance(stored, AttemptRecord) else record
            try:
                self.store.clear()
            except NetworkError as e:
                # the next load retries finalize; session_uid dedupes the record
                print(f"[assessment] snapshot clear failed for {self.data.session_uid}: {e}", flush=True)
            self.guard.remove()
            self.clock.cancel()
            print(f"[assessment] session {self.data.session_uid} {self.data.state}: "
                  f"{self.record.percentage}% passed={self.record.passed}", flush=True)

        if self.on_finished:
            self.on_finished(self)
        return self.record


class SessionManager:
    """
    Single-slot owner of the in-flight session for one snapshot slot.
    Gate -> ledger -> create on the way in; resume() on every load.
    """

    def __init__(self, store, assessment_provider, content_provider=None,
                 guard_factory: Optional[Callable[[], NavigationGuard]] = None,
                 scheduler=None, now: Callable[[], float] = time.time):
        self.store = store
        self.provider = assessment_provider
        self.ledger = AttemptLedger(assessment_provider)
        self.gate = ProgressGate(content_provider) if content_provider is not None else None
        self.guard_factory = guard_factory or NavigationGuard
        self.scheduler = scheduler
        self.now = now
        self._session: Optional[AssessmentSession] = None

    @property
    def current(self) -> Optional[AssessmentSession]:
        return self._session

    def _release(self, session: AssessmentSession) -> None:
        if self._session is session:
            self._session = None

    def _session_kwargs(self, definition: AssessmentDefinition) -> Dict[str, Any]:
        return {
            "guard": self.guard_factory(),
            "clock": CountdownClock(definition.time_limit_seconds, scheduler=self.scheduler),
            "now": self.now,
            "on_finished": self._release,
        }

    def create(self, definition: AssessmentDefinition, learner_id: Any) -> AssessmentSession:
        live = self._session
        if live is not None and not live.is_finished and live.state != INFORMING:
            print(f"[assessment] refused second session while {live.session_uid} is {live.state}", flush=True)
            raise ConcurrencyError(session_uid=live.session_uid)
        if self.store.load() is not None:
            print("[assessment] refused new session: slot holds an unfinished snapshot", flush=True)
            raise ConcurrencyError()
        validate_definition(definition)
        count = self.ledger.count_attempts(learner_id, definition.id)
        assert_can_start(definition, count)
        session = AssessmentSession.create(
            definition, learner_id, attempts_remaining(definition, count),
            self.store, self.provider, **self._session_kwargs(definition)
        )
        self._session = session
        return session

    def open(self, learner_id: Any, assessment_id: Any, course_id: Any = None) -> AssessmentSession:
        definition = self.provider.get_assessment_definition(assessment_id)
        if definition is None:
            raise ValidationError("Assessment not found.", assessment_id=assessment_id)
        if course_id is not None and definition.lesson_id is not None and self.gate is not None:
            if not self.gate.is_unlocked(course_id, learner_id, definition.lesson_id):
                raise LessonLockedError("Complete the previous lessons to unlock this assessment.",
                                        lesson_id=definition.lesson_id)
        return self.create(definition, learner_id)

    def resume(self, now: Optional[float] = None) -> Optional[AssessmentSession]:
        live = self._session
        if live is not None and not live.is_finished and live.state != INFORMING:
            live.on_tick(now)
            if live.pending_error is not None:
                live.finalize(expired=live.state == EXPIRED, now=now)
            return live
        snap = self.store.load()
        if snap is None:
            return None
        definition = self.provider.get_assessment_definition(snap.get("assessment_id"))
        if definition is None:
            # nothing left to score against; free the slot
            print(f"[assessment] dropping snapshot for missing assessment {snap.get('assessment_id')}", flush=True)
            self.store.clear()
            return None
        try:
            session = AssessmentSession.resume(snap, definition, self.store, self.provider, at=now,
                                               **self._session_kwargs(definition))
        except ValidationError as e:
            print(f"[assessment] dropping unusable snapshot: {e}", flush=True)
            self.store.clear()
            return None
        if not session.is_finished:
            self._session = session
        return session


__all__ = [
    "INFORMING", "ACTIVE", "COMPLETED", "EXPIRED", "TERMINAL_STATES",
    "START", "ANSWER", "ADVANCE", "TICK", "EXPIRE",
    "CLAIM", "PERSIST", "INSTALL_GUARD", "START_CLOCK", "FINALIZE",
    "Event", "SessionState", "validate_definition", "transition",
    "AssessmentSession", "SessionManager",
]
