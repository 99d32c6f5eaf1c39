# providers.py
# -----------------------------------------------------------------------------
# PostgreSQL-backed collaborators for the assessment engine.
# - Content: sections/lessons (read-only) + lesson_progress (monotonic writes)
# - Assessments: definitions (read-only) + assessment_attempts (append-only)
# - All SQL goes through the injected fetch_one/fetch_all/execute helpers
# - Connectivity failures become NetworkError; everything else propagates
# -----------------------------------------------------------------------------
import json
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import psycopg
from psycopg_pool import PoolTimeout

from errors import AssessmentError, NetworkError, StorageError
from models import DEFAULT_PASS_THRESHOLD, AssessmentDefinition, AttemptRecord, Lesson, Section, as_bool

# Engine-owned tables. Sections, lessons and assessments are authored elsewhere.
SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS public.lesson_progress (
        learner_id    TEXT        NOT NULL,
        lesson_id     TEXT        NOT NULL,
        completed     BOOLEAN     NOT NULL DEFAULT FALSE,
        completed_at  TIMESTAMPTZ,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (learner_id, lesson_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.assessment_attempts (
        id                 BIGSERIAL   PRIMARY KEY,
        learner_id         TEXT        NOT NULL,
        assessment_id      TEXT        NOT NULL,
        attempt_number     INTEGER     NOT NULL,
        percentage         INTEGER     NOT NULL,
        time_used_seconds  INTEGER     NOT NULL,
        answers            JSONB       NOT NULL,
        passed             BOOLEAN     NOT NULL,
        expired            BOOLEAN     NOT NULL DEFAULT FALSE,
        session_uid        TEXT        UNIQUE,
        created_at         TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS assessment_attempts_learner_idx
        ON public.assessment_attempts (learner_id, assessment_id);
    """,
    """
    CREATE TABLE IF NOT EXISTS public.assessment_snapshots (
        slot        TEXT        PRIMARY KEY,
        payload     JSONB       NOT NULL,
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
)

_TRANSIENT = (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout)


def translate_db_error(exc: Exception) -> Optional[AssessmentError]:
    if isinstance(exc, _TRANSIENT):
        return NetworkError(f"Storage unavailable: {exc}")
    if isinstance(exc, psycopg.Error):
        return StorageError(f"Storage rejected the request: {exc}")
    return None


@contextmanager
def db_errors(action: str):
    try:
        yield
    except _TRANSIENT as e:
        print(f"[DB] {action} failed: {e}", flush=True)
        raise NetworkError(f"{action} failed, please retry.") from e
    except psycopg.Error as e:
        print(f"[DB] {action} rejected: {e}", flush=True)
        raise StorageError(f"{action} failed.") from e


def ensure_schema(execute: Callable) -> bool:
    try:
        for stmt in SCHEMA_SQL:
            execute(stmt, ())
        return True
    except Exception as e:
        print(f"[DB] ensure_schema failed: {e}", flush=True)
        return False


class SqlContentProvider:
    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute: Callable):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.execute = execute

    def get_sections(self, course_id: Any) -> List[Section]:
        with db_errors("loading sections"):
            rows = self.fetch_all("""
                SELECT  s.id        AS section_id,
                        s.title     AS section_title,
                        s.position  AS section_order,
                        l.id        AS lesson_id,
                        l.position  AS lesson_order,
                        l.type      AS lesson_type
                  FROM  public.course_sections s
                  LEFT  JOIN public.lessons l ON l.section_id = s.id
                 WHERE  s.course_id = %s
                 ORDER  BY s.position, l.position;
            """, (course_id,))
        sections: Dict[Any, Dict[str, Any]] = {}
        for r in rows or []:
            sid = r.get("section_id")
            sec = sections.setdefault(sid, {
                "order": r.get("section_order") or 0,
                "title": r.get("section_title") or "",
                "lessons": [],
            })
            if r.get("lesson_id") is not None:
                sec["lessons"].append(Lesson(
                    id=r["lesson_id"],
                    section_id=sid,
                    order=int(r.get("lesson_order") or 0),
                    type=str(r.get("lesson_type") or "lesson"),
                ))
        return [
            Section(id=sid, order=int(s["order"]), title=s["title"], lessons=tuple(s["lessons"]))
            for sid, s in sections.items()
        ]

    def get_lesson_completion(self, learner_id: Any, lesson_id: Any) -> Dict[str, Any]:
        with db_errors("loading lesson progress"):
            row = self.fetch_one("""
                SELECT completed
                  FROM public.lesson_progress
                 WHERE learner_id = %s AND lesson_id = %s;
            """, (str(learner_id), str(lesson_id)))
        # no row yet means not completed, never an error
        return {"completed": as_bool((row or {}).get("completed"))}

    def get_completion_map(self, learner_id: Any, lesson_ids: List[Any]) -> Dict[str, bool]:
        if not lesson_ids:
            return {}
        with db_errors("loading lesson progress"):
            rows = self.fetch_all("""
                SELECT lesson_id, completed
                  FROM public.lesson_progress
                 WHERE learner_id = %s AND lesson_id = ANY(%s);
            """, (str(learner_id), [str(x) for x in lesson_ids]))
        return {str(r["lesson_id"]): as_bool(r.get("completed")) for r in rows or []}

    def set_lesson_completion(self, learner_id: Any, lesson_id: Any) -> None:
        # completed only ever goes false -> true; completed_at keeps the first instant
        with db_errors("saving lesson progress"):
            self.execute("""
                INSERT INTO public.lesson_progress (learner_id, lesson_id, completed, completed_at)
                VALUES (%s, %s, TRUE, now())
                ON CONFLICT (learner_id, lesson_id) DO UPDATE
                   SET completed    = TRUE,
                       completed_at = COALESCE(public.lesson_progress.completed_at, EXCLUDED.completed_at);
            """, (str(learner_id), str(lesson_id)))


class SqlAssessmentProvider:
    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute: Callable,
                 default_pass_threshold: int = DEFAULT_PASS_THRESHOLD):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.execute = execute
        self.default_pass_threshold = default_pass_threshold

    def get_assessment_definition(self, assessment_id: Any) -> Optional[AssessmentDefinition]:
        with db_errors("loading assessment"):
            head = self.fetch_one("""
                SELECT id, title, time_limit_minutes, pass_threshold, max_attempts, lesson_id
                  FROM public.assessments
                 WHERE id = %s AND COALESCE(status, 'active') = 'active';
            """, (str(assessment_id),))
            if not head:
                return None
            rows = self.fetch_all("""
                SELECT  q.id        AS question_id,
                        q.text      AS question_text,
                        o.id        AS option_id,
                        o.text      AS option_text,
                        o.is_correct
                  FROM  public.assessment_questions q
                  LEFT  JOIN public.assessment_options o ON o.question_id = q.id
                 WHERE  q.assessment_id = %s
                 ORDER  BY q.position, q.id, o.position, o.id;
            """, (str(assessment_id),))
        questions: Dict[Any, Dict[str, Any]] = {}
        for r in rows or []:
            q = questions.setdefault(r["question_id"], {
                "id": r["question_id"],
                "text": r.get("question_text") or "",
                "options": [],
            })
            if r.get("option_id") is not None:
                q["options"].append({
                    "id": r["option_id"],
                    "text": r.get("option_text") or "",
                    "is_correct": r.get("is_correct"),
                })
        data = dict(head)
        data["questions"] = list(questions.values())
        return AssessmentDefinition.from_dict(data, default_pass_threshold=self.default_pass_threshold)

    def get_attempt_history(self, learner_id: Any, assessment_id: Any) -> List[AttemptRecord]:
        with db_errors("loading attempt history"):
            rows = self.fetch_all("""
                SELECT learner_id, assessment_id, attempt_number, percentage, time_used_seconds,
                       answers, passed, session_uid, created_at
                  FROM public.assessment_attempts
                 WHERE learner_id = %s AND assessment_id = %s
                 ORDER BY attempt_number DESC;
            """, (str(learner_id), str(assessment_id)))
        return [AttemptRecord.from_row(r) for r in rows or []]

    def submit_attempt(self, learner_id: Any, assessment_id: Any, record: AttemptRecord) -> AttemptRecord:
        """
        Append one attempt. session_uid is the idempotency key: a retry after a
        lost acknowledgement returns the row that is already there.
        """
        payload = record.to_payload()
        with db_errors("submitting attempt"):
            row = self.fetch_one("""
                INSERT INTO public.assessment_attempts
                    (learner_id, assessment_id, attempt_number, percentage, time_used_seconds,
                     answers, passed, expired, session_uid)
                SELECT %s, %s, COALESCE(MAX(attempt_number), 0) + 1, %s, %s, %s, %s, %s, %s
                  FROM public.assessment_attempts
                 WHERE learner_id = %s AND assessment_id = %s
                ON CONFLICT (session_uid) DO NOTHING
                RETURNING attempt_number;
            """, (
                str(learner_id), str(assessment_id),
                payload["percentage"], payload["time_used_seconds"],
                json.dumps(payload["answers"]), payload["passed"], bool(record.expired), record.session_uid,
                str(learner_id), str(assessment_id),
            ))
            if not row:
                row = self.fetch_one("""
                    SELECT attempt_number
                      FROM public.assessment_attempts
                     WHERE session_uid = %s;
                """, (record.session_uid,))
                print(f"[assessment] attempt {record.session_uid} was already recorded", flush=True)
        number = int((row or {}).get("attempt_number") or 0) or None
        return replace(record, attempt_number=number)


__all__ = [
    "SCHEMA_SQL",
    "translate_db_error",
    "db_errors",
    "ensure_schema",
    "SqlContentProvider",
    "SqlAssessmentProvider",
]
