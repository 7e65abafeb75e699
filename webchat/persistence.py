"""Durable per-session chat transcripts.

Layout (shared with the browser's own post-stream save)::

    <web_chat_dir>/index.json           [{id, title, createdAt, updatedAt, messageCount}]
    <web_chat_dir>/<session_id>.jsonl   one message object per line

Messages are upserted by ``id``: a message whose id is already on disk
replaces that line in place, otherwise it is appended.
"""

import asyncio
import json
import logging
import re
import time
import uuid
import weakref
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,200}$")
DEFAULT_TITLE = "New Chat"


def _now_ms() -> int:
    return int(time.time() * 1000)


def validate_session_id(session_id: str) -> str:
    sid = str(session_id or "").strip()
    if not _SESSION_ID_RE.match(sid) or ".." in sid:
        raise ValueError(f"Invalid session id: {session_id!r}")
    return sid


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


class SessionStore:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        # Locks live only while some writer holds or awaits them.
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._index_lock = asyncio.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def index_path(self) -> Path:
        return self._root / "index.json"

    def session_path(self, session_id: str) -> Path:
        return self._root / f"{validate_session_id(session_id)}.jsonl"

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def upsert_messages(
        self,
        session_id: str,
        messages: List[Dict[str, Any]],
        title: Optional[str] = None,
    ) -> int:
        path = self.session_path(session_id)
        async with self._lock_for(session_id):
            new_count = await asyncio.to_thread(self._upsert_lines, path, messages)
        await self._touch_index(session_id, new_count=new_count, title=title)
        return new_count

    async def persist_message(self, session_id: str, message: Dict[str, Any]) -> bool:
        """Best-effort upsert of a single message. Failures are logged, never raised."""
        try:
            await self.upsert_messages(session_id, [message])
        except Exception:
            logger.exception(
                "[persist] failed to write message %s for session %s",
                message.get("id"),
                session_id,
            )
            return False
        return True

    async def persist_user_message(self, session_id: str, message: Dict[str, Any]) -> bool:
        record = dict(message)
        record.setdefault("id", f"user-{uuid.uuid4().hex}")
        record["role"] = "user"
        record.setdefault("timestamp", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()))
        return await self.persist_message(session_id, record)

    def read_messages(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        path = self.session_path(session_id)
        if not path.exists():
            return None
        out: List[Dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                out.append(parsed)
        return out

    def list_sessions(self) -> List[Dict[str, Any]]:
        index = self._load_index()
        return sorted(index, key=lambda s: int(s.get("updatedAt", 0) or 0), reverse=True)

    async def create_session(self, title: Optional[str] = None) -> Dict[str, Any]:
        session_id = uuid.uuid4().hex
        path = self.session_path(session_id)
        now = _now_ms()
        entry = {
            "id": session_id,
            "title": str(title or "").strip() or DEFAULT_TITLE,
            "createdAt": now,
            "updatedAt": now,
            "messageCount": 0,
        }
        async with self._lock_for(session_id):
            await asyncio.to_thread(_atomic_write, path, "")
        async with self._index_lock:
            index = await asyncio.to_thread(self._load_index)
            index.append(entry)
            await asyncio.to_thread(self._save_index, index)
        return entry

    def _upsert_lines(self, path: Path, messages: List[Dict[str, Any]]) -> int:
        lines: List[str] = []
        if path.exists():
            lines = [l for l in path.read_text(encoding="utf-8").split("\n") if l.strip()]
        positions: Dict[str, int] = {}
        for i, line in enumerate(lines):
            try:
                parsed = json.loads(line)
            except ValueError:
                # Malformed lines are kept untouched.
                continue
            if isinstance(parsed, dict) and isinstance(parsed.get("id"), str):
                positions.setdefault(parsed["id"], i)

        new_count = 0
        for msg in messages:
            serialized = json.dumps(msg, ensure_ascii=False)
            msg_id = msg.get("id") if isinstance(msg, dict) else None
            if isinstance(msg_id, str) and msg_id in positions:
                lines[positions[msg_id]] = serialized
                continue
            lines.append(serialized)
            if isinstance(msg_id, str):
                positions[msg_id] = len(lines) - 1
            new_count += 1

        _atomic_write(path, "\n".join(lines) + "\n")
        return new_count

    async def _touch_index(self, session_id: str, new_count: int, title: Optional[str]) -> None:
        try:
            async with self._index_lock:
                index = await asyncio.to_thread(self._load_index)
                now = _now_ms()
                entry = next((s for s in index if s.get("id") == session_id), None)
                if entry is None:
                    entry = {
                        "id": session_id,
                        "title": DEFAULT_TITLE,
                        "createdAt": now,
                        "messageCount": 0,
                    }
                    index.append(entry)
                entry["updatedAt"] = now
                if new_count > 0:
                    entry["messageCount"] = int(entry.get("messageCount", 0) or 0) + new_count
                if title:
                    entry["title"] = str(title)
                await asyncio.to_thread(self._save_index, index)
        except Exception:
            logger.exception("[persist] index update failed for session %s", session_id)

    def _load_index(self) -> List[Dict[str, Any]]:
        path = self.index_path
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("[persist] unreadable session index at %s", path)
            return []
        if not isinstance(raw, list):
            return []
        return [s for s in raw if isinstance(s, dict)]

    def _save_index(self, index: List[Dict[str, Any]]) -> None:
        _atomic_write(self.index_path, json.dumps(index, ensure_ascii=False, indent=2))
