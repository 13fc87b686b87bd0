"""Registry of live chat sessions, one event in flight per session."""
from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from .models import MessageState, SessionState


@dataclass
class SessionHandle:
    session_id: str
    state: SessionState
    # Last known processing state per message id, for retry bookkeeping.
    message_states: Dict[str, MessageState] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, SessionHandle] = {}
        self._lock = threading.Lock()

    def create(self, state: SessionState, session_id: Optional[str] = None) -> SessionHandle:
        sid = session_id or uuid.uuid4().hex
        handle = SessionHandle(session_id=sid, state=state)
        with self._lock:
            if sid in self._sessions:
                raise KeyError(f"session {sid!r} already exists")
            self._sessions[sid] = handle
        return handle

    def get(self, session_id: str) -> Optional[SessionHandle]:
        with self._lock:
            return self._sessions.get(session_id)

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    @contextmanager
    def checkout(self, session_id: str) -> Iterator[SessionHandle]:
        """Hold the session's lock for the duration of one event."""
        handle = self.get(session_id)
        if handle is None:
            raise KeyError(f"unknown session {session_id!r}")
        with handle.lock:
            yield handle
