# main.py: assessment service app, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the Flask session or, behind a trusted proxy, a header.

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Dict, Optional

from flask import Flask, request, g, session

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

from exam import create_exam_blueprint
from providers import ensure_schema

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# Identity
# =============================================================================
# Upstream proxy that authenticates learners and forwards their id.
TRUST_PROXY_IDENTITY = os.getenv("TRUST_PROXY_IDENTITY", "0").lower() in {"1", "true", "yes"}
IDENTITY_HEADER = os.getenv("IDENTITY_HEADER", "X-Authenticated-User-Id")

def current_learner_id() -> Optional[str]:
    uid = session.get("learner_id")
    if uid:
        return str(uid)
    if TRUST_PROXY_IDENTITY:
        h = (request.headers.get(IDENTITY_HEADER) or "").strip()
        return h.split(":", 1)[-1] or None
    return None

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name

def _log_choice(kwargs: dict, origin: str):
    host = kwargs.get("host", "localhost")
    port = kwargs.get("port", 5432)
    print(f"[DB] {origin}: TCP -> {host}:{port}", flush=True)

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # SQLAlchemy-style schemes are accepted and normalized
    for pref in ("postgresql+psycopg://", "postgres+psycopg://", "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    host = (qs.get("host") or [None])[0] or p.hostname
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set when DATABASE_URL is absent.")
    return {
        "host": DB_HOST or "127.0.0.1",
        "port": int(DB_PORT or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    if DATABASE_URL:
        try:
            kwargs = _parse_database_url(DATABASE_URL)
            _log_choice(kwargs, "Using DATABASE_URL (parsed)")
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}", flush=True)
    kwargs = _tcp_kwargs(); _log_choice(kwargs, "DB_* settings"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None
_schema_ready = False

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=6, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

# =============================================================================
# Request hooks
# =============================================================================
@app.before_request
def attach_identity_and_schema():
    global _schema_ready
    if request.path.endswith("/healthz"):
        return
    if not _schema_ready:
        _schema_ready = ensure_schema(execute)
    g.user_id = current_learner_id()

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

# =============================================================================
# Blueprints
# =============================================================================
_exam_deps: Dict[str, Any] = {"fetch_one": fetch_one, "fetch_all": fetch_all, "execute": execute}

app.register_blueprint(create_exam_blueprint(BASE_PATH, _exam_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
