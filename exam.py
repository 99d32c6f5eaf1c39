# exam.py
# -----------------------------------------------------------------------------
# Timed assessment engine + sequential lesson gating, as a Flask blueprint.
# - Lessons: flattened order; lesson k opens once lesson k-1 is completed
# - Assessment: informing -> active -> completed | expired, one attempt record
#   per session, max-attempts policy, resume across reloads from a snapshot
# - Request-driven clock: every request re-evaluates the deadline, the page
#   polls /tick once per second while a time limit applies
# - Soft lockdown script rendered only while the session is active
# -----------------------------------------------------------------------------

import os, time
from typing import Any, Callable, Dict, Optional

from flask import (
    Blueprint, request, jsonify, render_template, render_template_string,
    url_for, g
)
from jinja2 import TemplateNotFound

from assessment import ACTIVE, SessionManager
from errors import AssessmentError, LessonLockedError, NetworkError, TimeExpiredError, ValidationError
from gating import ProgressGate
from guard import NavigationGuard
from ledger import attempts_remaining
from models import DEFAULT_PASS_THRESHOLD
from providers import SqlAssessmentProvider, SqlContentProvider, translate_db_error
from snapshot import DbSnapshotStore, FileSnapshotStore, MemorySnapshotStore, learner_slot


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "/learn").
    Required deps: fetch_one, fetch_all, execute
    Optional deps: content_provider, assessment_provider, snapshot_store_factory, now
    """
    url_prefix = base_path or "/learn"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute:   Callable = deps["execute"]

    # ---- Config --------------------------------------------------------------
    PASS_THRESHOLD   = int(os.getenv("ASSESSMENT_PASS_THRESHOLD") or DEFAULT_PASS_THRESHOLD)
    SNAPSHOT_BACKEND = (os.getenv("ASSESSMENT_SNAPSHOT_BACKEND") or "db").strip().lower()
    SNAPSHOT_DIR     = (os.getenv("ASSESSMENT_SNAPSHOT_DIR") or "instance/snapshots").strip()
    GUARD_ENABLED    = (os.getenv("ASSESSMENT_GUARD_ENABLED", "1").lower() in ("1", "true", "yes"))

    # ---- Collaborators -------------------------------------------------------
    content = deps.get("content_provider") or SqlContentProvider(fetch_one, fetch_all, execute)
    assessments = deps.get("assessment_provider") or SqlAssessmentProvider(
        fetch_one, fetch_all, execute, default_pass_threshold=PASS_THRESHOLD
    )
    now_fn: Callable[[], float] = deps.get("now") or time.time
    gate = ProgressGate(content)

    _memory_stores: Dict[str, MemorySnapshotStore] = {}

    def _default_store(user_id: Any):
        slot = learner_slot(user_id)
        if SNAPSHOT_BACKEND == "memory":
            return _memory_stores.setdefault(slot, MemorySnapshotStore())
        if SNAPSHOT_BACKEND == "file":
            return FileSnapshotStore(os.path.join(SNAPSHOT_DIR, f"{slot}.json"))
        return DbSnapshotStore(fetch_one, execute, slot, translate=translate_db_error)

    store_factory: Callable = deps.get("snapshot_store_factory") or _default_store

    def _manager(user_id: Any) -> SessionManager:
        return SessionManager(
            store_factory(user_id), assessments, content_provider=content,
            guard_factory=lambda: NavigationGuard(enabled=GUARD_ENABLED),
            scheduler=None, now=now_fn,
        )

    # ------------------------------- responses --------------------------------
    def _unauthorized():
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    def _error(e: AssessmentError):
        if isinstance(e, NetworkError):
            print(f"[exam] transient failure: {e}", flush=True)
        return jsonify(e.to_dict()), e.status_code

    def _session_json(session, **extra):
        body = {"ok": True, "session": session.to_public(now_fn())}
        body.update(extra)
        return jsonify(body)

    def _urls(course_id: Optional[int], assessment_id: Optional[str]) -> Dict[str, Optional[str]]:
        out = {
            "current_url": url_for(f"{bp.name}.assessment_current"),
            "answer_url": url_for(f"{bp.name}.assessment_answer"),
            "advance_url": url_for(f"{bp.name}.assessment_advance"),
            "tick_url": url_for(f"{bp.name}.assessment_tick"),
            "guard_url": url_for(f"{bp.name}.assessment_guard"),
            "start_url": None,
            "status_url": None,
            "lessons_url": None,
        }
        if course_id is not None and assessment_id is not None:
            out["start_url"] = url_for(f"{bp.name}.assessment_start", course_id=course_id, assessment_id=assessment_id)
            out["status_url"] = url_for(f"{bp.name}.assessment_status", course_id=course_id, assessment_id=assessment_id)
        if course_id is not None:
            out["lessons_url"] = url_for(f"{bp.name}.lessons_index", course_id=course_id)
        return out

    def _require_session(mgr: SessionManager):
        session = mgr.resume(now_fn())
        if session is None:
            return None, (jsonify({"ok": False, "error": "no assessment in progress"}), 404)
        return session, None

    # ------------------------------- rendering --------------------------------
    def _render_assessment_page(context: Dict[str, Any]):
        """Try templates/assessment.html first; else render the inline page."""
        try:
            return render_template("assessment.html", **context)
        except TemplateNotFound:
            return render_template_string(_INLINE_PAGE, **context)

    def _render_assessment_error(course_id: Optional[int], msg: str, status: int = 400, title: str = "Assessment"):
        ctx = {
            "title": title,
            "course_id": course_id,
            "cfg": {},
            "session": None,
            "error_msg": msg,
            "guard_script": "",
            "urls": _urls(course_id, None),
        }
        return _render_assessment_page(ctx), status

    # --------------------------------- routes ---------------------------------
    # Lessons with gating flags
    @bp.get("/<int:course_id>/lessons")
    def lessons_index(course_id: int):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        try:
            states = gate.lesson_states(course_id, g.user_id)
        except AssessmentError as e:
            return _error(e)
        return jsonify({
            "ok": True,
            "lessons": states,
            "frontier_index": sum(1 for s in states if s["unlocked"]) - 1,
        })

    @bp.post("/<int:course_id>/lessons/<lesson_id>/complete")
    def lesson_complete(course_id: int, lesson_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        try:
            if not gate.is_unlocked(course_id, g.user_id, lesson_id):
                raise LessonLockedError("Complete the previous lesson first.", lesson_id=lesson_id)
            gate.complete_lesson(g.user_id, lesson_id)
            states = gate.lesson_states(course_id, g.user_id)
        except AssessmentError as e:
            return _error(e)
        return jsonify({"ok": True, "lessons": states})

    # Status (sidebar chips / start button)
    @bp.get("/<int:course_id>/assessment/<assessment_id>/status")
    def assessment_status(course_id: int, assessment_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        try:
            definition = assessments.get_assessment_definition(assessment_id)
            if definition is None:
                return jsonify({"ok": False, "error": "assessment not found"}), 404
            session = _manager(g.user_id).resume(now_fn())
            history = assessments.get_attempt_history(g.user_id, assessment_id)
            unlocked = True
            if definition.lesson_id is not None:
                unlocked = gate.is_unlocked(course_id, g.user_id, definition.lesson_id)
        except AssessmentError as e:
            return _error(e)

        state, session_uid = "none", None
        if session is not None and not session.is_finished and str(session.data.assessment_id) == str(assessment_id):
            session_uid = session.session_uid
            state = "pending" if session.pending_error else session.state
        elif history:
            state = "graded"

        latest = history[0] if history else None
        remaining = attempts_remaining(definition, len(history))
        return jsonify({
            "ok": True,
            "state": state,
            "session_uid": session_uid,
            "unlocked": unlocked,
            "cfg": {
                "time_limit_minutes": definition.time_limit_minutes,
                "pass_threshold": definition.pass_threshold,
                "max_attempts": definition.max_attempts,
                "num_questions": definition.total_questions,
            },
            "attempts_used": len(history),
            "attempts_remaining": remaining,
            "can_start": unlocked and state not in (ACTIVE, "pending") and (remaining is None or remaining > 0),
            "result": dict(latest.to_payload(), attempt_number=latest.attempt_number) if latest else None,
        })

    # Page: resume the in-flight attempt or show the rules (informing)
    @bp.get("/<int:course_id>/assessment/<assessment_id>")
    def assessment_page(course_id: int, assessment_id: str):
        if not getattr(g, "user_id", None):
            return _render_assessment_error(course_id, "Please sign in to take this assessment.", 401)
        mgr = _manager(g.user_id)
        try:
            session = mgr.resume(now_fn())
            # a result finalized during this load is shown in place of the rules
            same = session is not None and str(session.data.assessment_id) == str(assessment_id)
            if session is not None and not same and not session.is_finished:
                return _render_assessment_error(course_id, "Another assessment is already in progress.", 409)
            if not same:
                session = mgr.open(g.user_id, assessment_id, course_id=course_id)
        except AssessmentError as e:
            return _render_assessment_error(course_id, e.message, e.status_code)

        d = session.definition
        guard_url = url_for(f"{bp.name}.assessment_guard")
        return _render_assessment_page({
            "title": d.title or f"Assessment {d.id}",
            "course_id": course_id,
            "cfg": {
                "time_limit_minutes": d.time_limit_minutes,
                "pass_threshold": d.pass_threshold,
                "max_attempts": d.max_attempts,
                "num_questions": d.total_questions,
            },
            "session": session.to_public(now_fn()),
            "error_msg": None,
            "guard_script": session.guard.client_script(guard_url) if session.state == ACTIVE else "",
            "urls": _urls(course_id, assessment_id),
        })

    @bp.post("/<int:course_id>/assessment/<assessment_id>/start")
    def assessment_start(course_id: int, assessment_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        mgr = _manager(g.user_id)
        try:
            # finishes anything that expired while the learner was away
            mgr.resume(now_fn())
            session = mgr.open(g.user_id, assessment_id, course_id=course_id)
            session.start(now_fn())
        except AssessmentError as e:
            return _error(e)
        return _session_json(session)

    @bp.get("/assessment/current")
    def assessment_current():
        if not getattr(g, "user_id", None):
            return _unauthorized()
        try:
            session, missing = _require_session(_manager(g.user_id))
            if missing:
                return missing
            view = request.args.get("view")
            if view is not None:
                try:
                    index = int(view)
                except ValueError:
                    raise ValidationError("view must be a question index")
                return _session_json(session, view=session.view(index))
        except AssessmentError as e:
            return _error(e)
        return _session_json(session)

    @bp.post("/assessment/answer")
    def assessment_answer():
        if not getattr(g, "user_id", None):
            return _unauthorized()
        data = request.get_json(force=True, silent=True) or {}
        if data.get("option_id") is None:
            return jsonify({"ok": False, "error": "option_id is required"}), 400
        try:
            session, missing = _require_session(_manager(g.user_id))
            if missing:
                return missing
            feedback = session.answer(data["option_id"], now_fn())
        except TimeExpiredError as e:
            return _session_json(session, expired=True, message=e.message)
        except AssessmentError as e:
            return _error(e)
        return _session_json(session, feedback=feedback, accepted=feedback is not None)

    @bp.post("/assessment/advance")
    def assessment_advance():
        if not getattr(g, "user_id", None):
            return _unauthorized()
        try:
            session, missing = _require_session(_manager(g.user_id))
            if missing:
                return missing
            moved = session.advance(now_fn())
        except TimeExpiredError as e:
            return _session_json(session, expired=True, message=e.message)
        except AssessmentError as e:
            return _error(e)
        if not moved and session.state == ACTIVE:
            return jsonify({"ok": False, "error": "answer the current question first"}), 409
        return _session_json(session)

    @bp.post("/assessment/tick")
    def assessment_tick():
        if not getattr(g, "user_id", None):
            return _unauthorized()
        try:
            session, missing = _require_session(_manager(g.user_id))
            if missing:
                return missing
            session.on_tick(now_fn())
        except AssessmentError as e:
            return _error(e)
        return _session_json(session)

    @bp.post("/assessment/guard")
    def assessment_guard():
        if not getattr(g, "user_id", None):
            return _unauthorized()
        data = request.get_json(force=True, silent=True) or {}
        try:
            session, missing = _require_session(_manager(g.user_id))
            if missing:
                return missing
        except AssessmentError as e:
            return _error(e)
        toast = session.guard.intercept(
            str(data.get("event") or ""), key=data.get("key"),
            ctrl=bool(data.get("ctrl")), meta=bool(data.get("meta")), shift=bool(data.get("shift")),
        )
        if toast:
            print(f"[guard] {data.get('event')} intercepted for session {session.session_uid}", flush=True)
        return jsonify({"ok": True, "intercepted": toast is not None, "toast": toast})

    return bp


# -----------------------------------------------------------------------------#
# Inline page (used when templates/assessment.html is absent)
# -----------------------------------------------------------------------------#
_INLINE_PAGE = """
<!doctype html><html><head><meta charset="utf-8"/>
<title>{{ title }}</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  :root{--ink:#111827;--muted:#6b7280;--line:#e5e7eb}
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:var(--ink)}
  .wrap{max-width:760px;margin:0 auto;padding:24px}
  .card{border:1px solid var(--line);border-radius:10px;padding:14px;margin:12px 0;background:#fff}
  .btn{display:inline-block;padding:10px 16px;border-radius:8px;background:#111827;color:#fff;border:0;cursor:pointer}
  .btn[disabled]{opacity:.5;cursor:not-allowed}
  .btn.ghost{background:#fff;color:#111827;border:1px solid #111827}
  .muted{color:var(--muted);font-size:12px}
  .opt{display:block;width:100%;text-align:left;margin:6px 0;padding:10px 12px;border-radius:8px;border:2px solid var(--line);background:#f9fafb;cursor:pointer}
  .opt.ok{border-color:#10b981;background:#ecfdf5}
  .opt.bad{border-color:#ef4444;background:#fef2f2}
  .badge{display:inline-block;padding:2px 8px;border-radius:999px;font-size:12px;border:1px solid #d1d5db;background:#f9fafb}
  .badge.ok{border-color:#10b981;background:#ecfdf5;color:#065f46}
  .badge.fail{border-color:#ef4444;background:#fef2f2;color:#991b1b}
  #timer{font-variant-numeric:tabular-nums;font-weight:600}
</style>
</head>
<body>
<div class="wrap">
  <h1>{{ title }}</h1>
  {% if error_msg %}
    <div class="card" style="color:#b91c1c">{{ error_msg }}</div>
    {% if urls.lessons_url %}<a class="btn ghost" href="{{ urls.lessons_url }}">Back to lessons</a>{% endif %}
  {% else %}
    <div class="muted">
      {{ cfg.num_questions }} questions ·
      Time limit: {% if cfg.time_limit_minutes %}{{ cfg.time_limit_minutes }} min{% else %}none{% endif %} ·
      Pass: {{ cfg.pass_threshold }}% ·
      Attempts left: {% if session.attempts_remaining is none %}unlimited{% else %}{{ session.attempts_remaining }}{% endif %}
    </div>
    <div id="informing" class="card" {% if session.state != 'informing' %}style="display:none"{% endif %}>
      <p>Once started, the timer keeps running even if you leave or reload the page.
         Each answer is final. The attempt is submitted automatically when time runs out.</p>
      <button class="btn" id="start-btn">Start assessment</button>
      <span id="start-msg" class="muted"></span>
    </div>
    <div id="active" {% if session.state != 'active' %}style="display:none"{% endif %}>
      <div class="muted">Question <span id="qnum"></span> / {{ cfg.num_questions }}
        {% if cfg.time_limit_minutes %} · Time left: <span id="timer"></span>{% endif %}</div>
      <div class="card">
        <h2 id="qtext" style="margin-top:0"></h2>
        <div id="options" role="radiogroup"></div>
        <div id="feedback" class="muted"></div>
      </div>
      <button class="btn" id="next-btn" disabled>Next question</button>
    </div>
    <div id="final" class="card" style="display:none">
      <div><strong>Result:</strong> <span id="score"></span> <span id="pass" class="badge"></span></div>
      <div id="final-msg" class="muted"></div>
    </div>
  {% endif %}
</div>
{{ guard_script }}
{% if not error_msg %}
<script>
(function(){
  const URLS = {{ urls|tojson }};
  let S = {{ session|tojson }};
  let ticking = null;
  const $ = function(id){ return document.getElementById(id); };

  async function post(url, body){
    const r = await fetch(url, {method:"POST", headers:{"Content-Type":"application/json"}, body: JSON.stringify(body || {})});
    return r.json();
  }
  function fmt(s){ if(s === null || s === undefined) return ""; const m = Math.floor(s/60), r = s%60; return m + ":" + (r<10?"0":"") + r; }

  function showFinal(){
    $('active').style.display = 'none'; $('informing').style.display = 'none';
    $('final').style.display = '';
    if (ticking) { clearInterval(ticking); ticking = null; }
    if (window.assessmentGuard) window.assessmentGuard.remove();
    if (S.result) {
      $('score').textContent = S.result.percentage + "%";
      $('pass').className = "badge " + (S.result.passed ? "ok" : "fail");
      $('pass').textContent = S.result.passed ? "Passed" : "Not passed";
      $('final-msg').textContent = S.state === 'expired' ? "Time ran out; your answers were submitted." : "";
    } else if (S.pending) {
      $('final-msg').textContent = "Your result could not be saved yet. Reload the page to retry.";
    }
  }

  function render(){
    if (S.state === 'completed' || S.state === 'expired') { showFinal(); return; }
    if (S.state !== 'active' || !S.question) return;
    $('informing').style.display = 'none'; $('active').style.display = '';
    const q = S.question;
    $('qnum').textContent = q.number;
    $('qtext').textContent = q.question.text;
    const box = $('options'); box.innerHTML = '';
    q.question.options.forEach(function(o){
      const b = document.createElement('button');
      b.className = 'opt'; b.setAttribute('role', 'radio'); b.textContent = o.text;
      b.setAttribute('aria-checked', String(q.selected_option_id === o.id));
      b.disabled = q.locked;
      b.addEventListener('click', function(){ answer(o.id); });
      box.appendChild(b);
    });
    $('feedback').textContent = '';
    $('next-btn').disabled = !S.answered;
    $('next-btn').textContent = (q.number >= q.total) ? 'Finish assessment' : 'Next question';
    if (S.remaining_seconds !== null && $('timer')) $('timer').textContent = fmt(S.remaining_seconds);
  }

  async function answer(optionId){
    const j = await post(URLS.answer_url, {option_id: optionId});
    if (!j.ok) { $('feedback').textContent = j.error || 'Error'; return; }
    S = j.session; render();
    if (j.feedback) {
      $('feedback').textContent = j.feedback.correct ? '✓ Correct!' : '✗ Incorrect. The correct answer is highlighted.';
      document.querySelectorAll('.opt').forEach(function(b, i){
        const id = S.question.question.options[i].id;
        if (j.feedback.correct_option_ids.indexOf(id) !== -1) b.classList.add('ok');
        else if (id === j.feedback.option_id) b.classList.add('bad');
      });
    }
  }

  async function advance(){
    const j = await post(URLS.advance_url);
    if (!j.ok) { $('feedback').textContent = j.error || 'Error'; return; }
    S = j.session; render();
  }

  async function tick(){
    try {
      const j = await post(URLS.tick_url);
      if (j.ok) { S = j.session; if (S.state !== 'active') render(); else if ($('timer')) $('timer').textContent = fmt(S.remaining_seconds); }
    } catch (e) { /* next tick recomputes from the server clock */ }
  }

  if ($('start-btn')) $('start-btn').addEventListener('click', async function(){
    const btn = this;
    if (btn.disabled) return;
    btn.disabled = true;
    let j;
    try { j = await post(URLS.start_url); } catch (e) { j = {ok: false, error: 'Network error, please retry.'}; }
    if (!j.ok) { $('start-msg').textContent = j.error || 'Could not start.'; btn.disabled = false; return; }
    // reload so the page comes back in resume mode with the exit guard installed
    window.location.reload();
  });
  $('next-btn').addEventListener('click', function(){ advance(); });

  render();
  if (S.state === 'active' && S.time_limit_seconds > 0) ticking = setInterval(tick, 1000);
})();
</script>
{% endif %}
</body></html>
"""
