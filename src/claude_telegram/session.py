"""Per-user Claude session ids persisted in the workspace."""

from __future__ import annotations

import contextlib
import json
import os
import uuid
from pathlib import Path

from loguru import logger

DATA_DIR = Path("data") / ".claude-telegram"
SESSIONS_FILE_NAME = "sessions.json"


def derive_session_id(user_key: str, namespace: str | None = None) -> str:
    """Deterministic first session id for one user."""

    if namespace:
        seed = uuid.uuid5(uuid.NAMESPACE_DNS, namespace)
        return str(uuid.uuid5(seed, user_key))
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, user_key))


class SessionStore:
    """Map each user to the session id Claude resumes.

    The file on disk is a flat ``{user_id: session_id}`` mapping rewritten on
    every mutation. Whether a session is still provisional (allocated here but
    never accepted by Claude) is only tracked in memory.
    """

    def __init__(self, workspace: Path, *, namespace: str | None = None) -> None:
        self.data_dir = workspace / DATA_DIR
        self.file_path = self.data_dir / SESSIONS_FILE_NAME
        self.namespace = namespace
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        with contextlib.suppress(OSError):
            self.data_dir.chmod(0o700)
        self._sessions = self._load()
        self._provisional: set[str] = set()

    def get(self, user_id: int | str) -> str | None:
        return self._sessions.get(str(user_id))

    def get_or_create(self, user_id: int | str) -> tuple[str, bool]:
        """Return ``(session_id, is_new)`` for one user, creating the id if needed."""

        key = str(user_id)
        existing = self._sessions.get(key)
        if existing:
            return existing, key in self._provisional

        session_id = derive_session_id(key, self.namespace)
        self._sessions[key] = session_id
        self._provisional.add(key)
        self._save()
        logger.info("session.created user_id={} session_id={}", key, session_id)
        return session_id, True

    def confirm(self, user_id: int | str, session_id: str | None = None) -> None:
        """Mark the user's session as accepted by Claude, so later turns resume it."""

        key = str(user_id)
        if session_id is not None and self._sessions.get(key) != session_id:
            return
        self._provisional.discard(key)

    def reset(self, user_id: int | str) -> str:
        """Replace the user's session with a fresh random id."""

        key = str(user_id)
        previous = self._sessions.get(key)
        session_id = str(uuid.uuid4())
        while session_id == previous:
            session_id = str(uuid.uuid4())
        self._sessions[key] = session_id
        self._provisional.add(key)
        self._save()
        logger.info("session.reset user_id={} previous={} session_id={}", key, previous, session_id)
        return session_id

    def snapshot(self) -> dict[str, str]:
        return dict(self._sessions)

    def _load(self) -> dict[str, str]:
        if not self.file_path.exists():
            return {}
        try:
            payload = json.loads(self.file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("session.load_failed path={}", self.file_path)
            return {}
        if not isinstance(payload, dict):
            logger.warning("session.load_failed path={} reason=not-a-mapping", self.file_path)
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str) and value}

    def _save(self) -> None:
        tmp_path = self.file_path.with_name(f".{self.file_path.name}.tmp")
        data = json.dumps(self._sessions, indent=2) + "\n"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.file_path)
        with contextlib.suppress(OSError):
            self.file_path.chmod(0o600)
