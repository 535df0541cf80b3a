"""
Maps session ids to live inference sessions.
"""

import logging
import threading
from typing import Dict, List

from .base import LOCAL, REMOTE, BackendConfig, InferenceSession
from .local_session import LocalInferenceSession
from .remote_session import RemoteInferenceSession
from ..errors import ConfigurationError, DuplicateSessionId, NotFoundError

logger = logging.getLogger(__name__)

_SESSION_CLASSES = {
    LOCAL: LocalInferenceSession,
    REMOTE: RemoteInferenceSession,
}


def create_session(session_id: str, config: BackendConfig) -> InferenceSession:
    """Factory: build an *uninitialised* session for ``config.kind``."""
    cls = _SESSION_CLASSES.get((config.kind or "").lower())
    if cls is None:
        raise ConfigurationError(
            f"Unknown backend kind '{config.kind}' for model '{config.name}'. "
            f"Choose one of: {', '.join(sorted(_SESSION_CLASSES))}")
    return cls(session_id)


class SessionRegistry:
    """Thread-safe ``session_id -> InferenceSession`` map.

    Creation reserves the id before the (possibly slow) model load, so two
    concurrent ``create`` calls with one id cannot both succeed.
    """

    def __init__(self):
        self._sessions: Dict[str, InferenceSession] = {}
        self._reserved: set = set()
        self._lock = threading.Lock()

    def create(self, session_id: str, backend_config: BackendConfig) -> InferenceSession:
        with self._lock:
            if session_id in self._sessions or session_id in self._reserved:
                raise DuplicateSessionId(f"Session '{session_id}' already exists")
            self._reserved.add(session_id)

        try:
            session = create_session(session_id, backend_config)
            session.init(backend_config)
        except Exception:
            with self._lock:
                self._reserved.discard(session_id)
            logger.warning("[session] Could not create %s with %s",
                           session_id, backend_config.name)
            raise

        with self._lock:
            self._reserved.discard(session_id)
            self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> InferenceSession:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise NotFoundError(f"Session '{session_id}' not found") from None

    def dispose(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFoundError(f"Session '{session_id}' not found")
        session.dispose()

    def dispose_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.dispose()

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
