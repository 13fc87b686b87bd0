"""Run permitted commands against a filesystem executor, one at a time.

Executors speak a small request/response protocol:

    request:  {"operation", "path", "content"?, "old_text"?, "new_text"?}
    response: {"success": bool, "data"?: str | list[str], "error"?: str}
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from . import commands as gate
from .errors import (
    ExecutorRequestFailed,
    ExecutorResponseInvalid,
    ExecutorUnavailable,
    PermissionDenied,
)
from .models import Command, CommandResult, SessionState

logger = logging.getLogger(__name__)

SEPARATOR = "/"
DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=60.0, write=30.0, pool=5.0)


class Executor(Protocol):
    def execute(self, request: Dict[str, Any]) -> Dict[str, Any]:
        ...


def resolve_path(root: str, path: str) -> str:
    """Absolute paths pass through, "." is the root, anything else is joined."""
    if path.startswith(SEPARATOR):
        return path
    if path == ".":
        return root
    return f"{root}{SEPARATOR}{path}"


# -----------------------------
# Dispatcher
# -----------------------------
class CommandDispatcher:
    def dispatch(self, commands: Sequence[Command], session: SessionState) -> List[CommandResult]:
        """Return exactly one result per command, in input order. Never raises."""
        results: List[CommandResult] = []
        for command in commands:
            results.append(self._run_one(command, session))
        ok = sum(1 for r in results if r.success)
        logger.info("dispatched %d commands (%d succeeded)", len(results), ok)
        return results

    def _run_one(self, command: Command, session: SessionState) -> CommandResult:
        if not gate.allowed(command.operation, session.permissions):
            return _failed(command, command.path, PermissionDenied(command.operation, session.permissions))
        if session.executor is None:
            return _failed(command, command.path, ExecutorUnavailable())

        resolved = resolve_path(session.filesystem_root, command.path)
        request: Dict[str, Any] = {
            "operation": command.operation,
            "path": resolved,
            "content": command.content,
        }
        if command.old_text is not None:
            request["old_text"] = command.old_text
        if command.new_text is not None:
            request["new_text"] = command.new_text

        try:
            response = session.executor.execute(request)
            return _to_result(command.operation, resolved, response)
        except (ExecutorRequestFailed, ExecutorResponseInvalid) as e:
            logger.warning("%s %s failed: %s", command.operation, resolved, e)
            return _failed(command, resolved, e)
        except Exception as e:
            # Any other executor fault is still a per-command failure.
            logger.exception("executor raised on %s %s", command.operation, resolved)
            return _failed(command, resolved, ExecutorRequestFailed(f"executor error: {e}"))


def _failed(command: Command, path: str, error: Exception) -> CommandResult:
    return CommandResult(success=False, operation=command.operation, path=path, error=str(error))


def _to_result(operation: str, path: str, response: Any) -> CommandResult:
    if not isinstance(response, dict) or not isinstance(response.get("success"), bool):
        raise ExecutorResponseInvalid(f"malformed executor response: {response!r}")

    raw = response.get("data")
    data: Optional[str] = None
    if operation == "list-files" and raw is not None:
        if isinstance(raw, list) and all(isinstance(n, str) for n in raw):
            data = ", ".join(raw)
        elif isinstance(raw, str):
            data = raw
        else:
            raise ExecutorResponseInvalid(f"list-files data is not a list of names: {raw!r}")
    elif operation == "read-file" and raw is not None:
        if not isinstance(raw, str):
            raise ExecutorResponseInvalid(f"read-file data is not text: {raw!r}")
        data = raw

    error = response.get("error")
    return CommandResult(
        success=response["success"],
        operation=operation,
        path=path,
        data=data,
        error=str(error) if error is not None else None,
    )


# -----------------------------
# Executors
# -----------------------------
class HttpExecutor:
    """POSTs each request as JSON to an external executor service."""

    def __init__(
        self,
        url: str,
        *,
        timeout: Optional[httpx.Timeout] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout or DEFAULT_TIMEOUT)

    def execute(self, request: Dict[str, Any]) -> Dict[str, Any]:
        body = {k: v for k, v in request.items() if v is not None}
        try:
            r = self._client.post(self.url, json=body)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise ExecutorRequestFailed(f"executor request failed: {e}") from e
        try:
            return r.json()
        except ValueError as e:
            raise ExecutorResponseInvalid(f"executor returned non-JSON body: {e}") from e

    def close(self) -> None:
        self._client.close()


class LocalExecutor:
    """Performs the operations on the local filesystem.

    When ``root`` is given, paths resolving outside it are refused.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = Path(root).resolve() if root else None

    def execute(self, request: Dict[str, Any]) -> Dict[str, Any]:
        operation = request.get("operation")
        handler = getattr(self, "_op_" + str(operation).replace("-", "_"), None)
        if handler is None:
            return {"success": False, "error": f"unsupported operation: {operation}"}
        try:
            path = self._confine(str(request.get("path", "")))
            data = handler(path, request)
        except (OSError, ValueError) as e:
            return {"success": False, "error": str(e)}
        out: Dict[str, Any] = {"success": True}
        if data is not None:
            out["data"] = data
        return out

    def _confine(self, raw: str) -> Path:
        path = Path(raw).resolve()
        if self.root is not None and path != self.root and self.root not in path.parents:
            raise ValueError(f"path {raw!r} is outside {self.root}")
        return path

    # --------- operations ----------
    def _op_read_file(self, path: Path, request: Dict[str, Any]) -> str:
        return path.read_text(encoding="utf-8")

    def _op_write_file(self, path: Path, request: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(request.get("content") or "", encoding="utf-8")

    def _op_list_files(self, path: Path, request: Dict[str, Any]) -> List[str]:
        return sorted(p.name for p in path.iterdir())

    def _op_create_dir(self, path: Path, request: Dict[str, Any]) -> None:
        path.mkdir(parents=True, exist_ok=True)

    def _op_delete_file(self, path: Path, request: Dict[str, Any]) -> None:
        path.unlink()

    def _op_edit_file(self, path: Path, request: Dict[str, Any]) -> None:
        old = request.get("old_text")
        new = request.get("new_text") or ""
        if not old:
            raise ValueError("edit-file requires old_text")
        text = path.read_text(encoding="utf-8")
        if old not in text:
            raise ValueError(f"old_text not found in {path}")
        path.write_text(text.replace(old, new, 1), encoding="utf-8")

    def _op_delete_dir(self, path: Path, request: Dict[str, Any]) -> None:
        if self.root is not None and path == self.root:
            raise ValueError("refusing to delete the session root")
        shutil.rmtree(path)
