# snapshot.py
# -----------------------------------------------------------------------------
# Single-slot durable storage for one in-flight assessment session.
# - save() after every state change, load() on every page load, clear() once
#   the attempt record is written
# - claim() is the atomic first write: it fails while a usable session holds
#   the slot, so two concurrent starts cannot both own it
# - envelope: {"version", "saved_at", "session"}; unreadable/old envelopes load
#   as None (and are logged) instead of crashing the page
# - backends: memory (tests), JSON file (single-user/dev), PostgreSQL (server)
# -----------------------------------------------------------------------------
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from errors import NetworkError, StorageError

SNAPSHOT_VERSION = 1


def wrap(session: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "version": SNAPSHOT_VERSION,
        "saved_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "session": session,
    }


def unwrap(envelope: Any, origin: str = "snapshot") -> Optional[Dict[str, Any]]:
    if isinstance(envelope, (str, bytes)):
        try:
            envelope = json.loads(envelope)
        except ValueError as e:
            print(f"[snapshot] {origin}: unreadable payload ignored: {e}", flush=True)
            return None
    if not isinstance(envelope, dict):
        return None
    if envelope.get("version") != SNAPSHOT_VERSION:
        print(f"[snapshot] {origin}: version {envelope.get('version')!r} ignored", flush=True)
        return None
    session = envelope.get("session")
    return session if isinstance(session, dict) else None


class SnapshotStore:
    """save/load/clear contract; subclasses pick the medium."""

    def save(self, snapshot: Dict[str, Any]) -> None:
        raise NotImplementedError

    def claim(self, snapshot: Dict[str, Any]) -> bool:
        """Write only if the slot is empty or unusable. False when another session owns it."""
        raise NotImplementedError

    def load(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemorySnapshotStore(SnapshotStore):
    def __init__(self):
        self._payload: Optional[str] = None
        self.saves = 0
        self.clears = 0

    def save(self, snapshot):
        # serialize so callers can't mutate what was stored
        self._payload = json.dumps(wrap(snapshot))
        self.saves += 1

    def claim(self, snapshot):
        if self._payload is not None and unwrap(self._payload, "memory") is not None:
            return False
        self.save(snapshot)
        return True

    def load(self):
        if self._payload is None:
            return None
        return unwrap(self._payload, "memory")

    def clear(self):
        self._payload = None
        self.clears += 1


class FileSnapshotStore(SnapshotStore):
    """One JSON file per slot, replaced atomically."""

    def __init__(self, path):
        self.path = Path(path)

    def _write_tmp(self, snapshot) -> str:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(wrap(snapshot), fh, ensure_ascii=False)
        except Exception:
            os.unlink(tmp)
            raise
        return tmp

    def save(self, snapshot):
        tmp = None
        try:
            tmp = self._write_tmp(snapshot)
            os.replace(tmp, self.path)
        except OSError as e:
            print(f"[snapshot] {self.path}: save failed: {e}", flush=True)
            raise StorageError(f"Could not save the session snapshot: {e}") from e
        finally:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)

    def claim(self, snapshot):
        tmp = None
        try:
            tmp = self._write_tmp(snapshot)
            try:
                # link fails if the slot file exists, so only one claimer wins
                os.link(tmp, self.path)
            except FileExistsError:
                if self.load() is not None:
                    return False
                os.replace(tmp, self.path)
            return True
        except OSError as e:
            print(f"[snapshot] {self.path}: claim failed: {e}", flush=True)
            raise StorageError(f"Could not save the session snapshot: {e}") from e
        finally:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)

    def load(self):
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            print(f"[snapshot] {self.path}: unreadable file ignored: {e}", flush=True)
            return None
        return unwrap(text, str(self.path))

    def clear(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class DbSnapshotStore(SnapshotStore):
    """
    Row per slot in public.assessment_snapshots.
    Uses the injected fetch_one/execute helpers; connectivity errors are
    reported as NetworkError by the translate() hook.
    """

    def __init__(self, fetch_one: Callable, execute: Callable, slot: str,
                 translate: Optional[Callable[[Exception], Exception]] = None):
        self.fetch_one = fetch_one
        self.execute = execute
        self.slot = str(slot)
        self.translate = translate

    def _call(self, fn, sql, params):
        try:
            return fn(sql, params)
        except NetworkError:
            raise
        except Exception as e:
            mapped = self.translate(e) if self.translate else None
            if mapped is not None:
                raise mapped from e
            raise

    def save(self, snapshot):
        self._call(self.execute, """
            INSERT INTO public.assessment_snapshots (slot, payload, updated_at)
            VALUES (%s, %s, now())
            ON CONFLICT (slot) DO UPDATE
               SET payload = EXCLUDED.payload,
                   updated_at = EXCLUDED.updated_at;
        """, (self.slot, json.dumps(wrap(snapshot), ensure_ascii=False)))

    def claim(self, snapshot):
        payload = json.dumps(wrap(snapshot), ensure_ascii=False)
        row = self._call(self.fetch_one, """
            INSERT INTO public.assessment_snapshots (slot, payload, updated_at)
            VALUES (%s, %s, now())
            ON CONFLICT (slot) DO NOTHING
            RETURNING slot;
        """, (self.slot, payload))
        if row:
            return True
        held = self._call(self.fetch_one, """
            SELECT payload
              FROM public.assessment_snapshots
             WHERE slot = %s;
        """, (self.slot,))
        if held and unwrap(held.get("payload"), f"slot {self.slot}") is not None:
            return False
        # unusable row: replace it only if nobody rewrote it meanwhile
        old = held.get("payload") if held else None
        if old is None:
            return False
        if not isinstance(old, str):
            old = json.dumps(old, ensure_ascii=False)
        row = self._call(self.fetch_one, """
            UPDATE public.assessment_snapshots
               SET payload = %s, updated_at = now()
             WHERE slot = %s AND payload = %s::jsonb
            RETURNING slot;
        """, (payload, self.slot, old))
        return bool(row)

    def load(self):
        row = self._call(self.fetch_one, """
            SELECT payload
              FROM public.assessment_snapshots
             WHERE slot = %s;
        """, (self.slot,))
        if not row:
            return None
        return unwrap(row.get("payload"), f"slot {self.slot}")

    def clear(self):
        self._call(self.execute, "DELETE FROM public.assessment_snapshots WHERE slot = %s;", (self.slot,))


def learner_slot(learner_id: Any) -> str:
    return f"learner-{learner_id}"


__all__ = [
    "SNAPSHOT_VERSION",
    "wrap",
    "unwrap",
    "SnapshotStore",
    "MemorySnapshotStore",
    "FileSnapshotStore",
    "DbSnapshotStore",
    "learner_slot",
]
