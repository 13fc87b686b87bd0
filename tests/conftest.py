"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fs_chat.models import SessionState  # noqa: E402
from fs_chat.store import MemoryStoreBackend, StoreAdapter  # noqa: E402


class FakeExecutor:
    """Records requests and answers from a canned response table."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses = responses or {}
        self.requests: List[Dict[str, Any]] = []

    def execute(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append(request)
        resp = self.responses.get(request["operation"], {"success": True})
        if isinstance(resp, Exception):
            raise resp
        return resp


class SpyBackend:
    """Generation backend that replays queued replies and records requests.

    A queued Exception is raised instead of returned.
    """

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies) or ["ok"]
        self.requests: List[Dict[str, Any]] = []

    def complete(self, request: Dict[str, Any]) -> Any:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return {"content": [{"type": "text", "text": reply}]}


@pytest.fixture
def store_backend() -> MemoryStoreBackend:
    return MemoryStoreBackend()


@pytest.fixture
def store(store_backend: MemoryStoreBackend) -> StoreAdapter:
    return StoreAdapter(store_backend)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def session(executor: FakeExecutor) -> SessionState:
    return SessionState(
        store_id="memory",
        filesystem_root="/srv/project",
        permissions=frozenset({"read", "write", "delete"}),
        executor=executor,
    )


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "FS_CHAT_CONFIG" or var.startswith("FS_CHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield
