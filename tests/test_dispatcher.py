from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import httpx
import pytest

from conftest import FakeExecutor
from fs_chat.dispatcher import CommandDispatcher, HttpExecutor, LocalExecutor, resolve_path
from fs_chat.errors import ExecutorRequestFailed, ExecutorResponseInvalid
from fs_chat.models import Command, SessionState


ROOT = "/srv/project"


def test_resolve_path():
    assert resolve_path(ROOT, "/abs/x") == "/abs/x"
    assert resolve_path(ROOT, ".") == ROOT
    assert resolve_path(ROOT, "a/b") == ROOT + "/" + "a/b"


def test_permission_denied_makes_no_remote_call(session: SessionState, executor: FakeExecutor):
    session = replace(session, permissions=frozenset({"read"}))
    (result,) = CommandDispatcher().dispatch([Command(operation="write-file", path="x")], session)
    assert result.success is False
    assert "not permitted" in result.error
    assert "write-file" in result.error and "read" in result.error
    assert executor.requests == []


def test_missing_executor(session: SessionState):
    session = replace(session, executor=None)
    (result,) = CommandDispatcher().dispatch([Command(operation="read-file", path="x")], session)
    assert result.success is False
    assert result.error == "executor unavailable"


def test_list_files_joins_names_in_order(session: SessionState, executor: FakeExecutor):
    executor.responses["list-files"] = {"success": True, "data": ["a.txt", "b.txt"]}
    (result,) = CommandDispatcher().dispatch([Command(operation="list-files", path=".")], session)
    assert result.success is True
    assert result.data == "a.txt, b.txt"
    assert result.path == ROOT
    assert executor.requests == [{"operation": "list-files", "path": ROOT, "content": None}]


def test_read_file_content_is_verbatim_and_other_ops_drop_data(session: SessionState, executor: FakeExecutor):
    executor.responses["read-file"] = {"success": True, "data": "  line\n"}
    executor.responses["create-dir"] = {"success": True, "data": "ignored"}
    results = CommandDispatcher().dispatch(
        [Command(operation="read-file", path="a"), Command(operation="create-dir", path="d")],
        session,
    )
    assert results[0].data == "  line\n"
    assert results[1].data is None


def test_executor_error_is_carried_through(session: SessionState, executor: FakeExecutor):
    executor.responses["delete-file"] = {"success": False, "error": "no such file"}
    (result,) = CommandDispatcher().dispatch([Command(operation="delete-file", path="gone")], session)
    assert result.success is False
    assert result.error == "no such file"
    assert result.path == ROOT + "/gone"


def test_edit_sends_old_and_new_text(session: SessionState, executor: FakeExecutor):
    cmd = Command(operation="edit-file", path="f.py", old_text="a", new_text="b")
    CommandDispatcher().dispatch([cmd], session)
    assert executor.requests[0]["old_text"] == "a"
    assert executor.requests[0]["new_text"] == "b"


@pytest.mark.parametrize(
    "response",
    [
        ExecutorRequestFailed("connection reset"),
        ExecutorResponseInvalid("garbage"),
        RuntimeError("executor crashed"),
        {"data": "no success flag"},
        "not a dict",
        {"success": True, "data": [1, 2]},
    ],
)
def test_faults_become_failed_results(session: SessionState, executor: FakeExecutor, response):
    executor.responses["list-files"] = response
    (result,) = CommandDispatcher().dispatch([Command(operation="list-files", path=".")], session)
    assert result.success is False
    assert result.error


def test_batch_is_sequential_complete_and_ordered(session: SessionState, executor: FakeExecutor):
    session = replace(session, permissions=frozenset({"read", "write"}))
    executor.responses["read-file"] = ExecutorRequestFailed("timeout")
    cmds = [
        Command(operation="write-file", path="1", content="x"),
        Command(operation="delete-file", path="2"),   # denied
        Command(operation="read-file", path="3"),     # transport failure
        Command(operation="bogus", path="4"),         # unknown
        Command(operation="list-files", path="5"),
    ]
    results = CommandDispatcher().dispatch(cmds, session)
    assert [r.operation for r in results] == [c.operation for c in cmds]
    assert [r.success for r in results] == [True, False, False, False, True]
    assert [req["path"] for req in executor.requests] == [ROOT + "/1", ROOT + "/3", ROOT + "/5"]


# -----------------------------
# Executors
# -----------------------------
def test_http_executor_posts_json_and_returns_body():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "data": ["x"]})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    out = HttpExecutor("http://exec/run", client=client).execute(
        {"operation": "list-files", "path": "/tmp", "content": None}
    )
    assert out == {"success": True, "data": ["x"]}
    assert seen == [{"operation": "list-files", "path": "/tmp"}]


def test_http_executor_error_mapping():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    down = HttpExecutor("http://exec/run", client=httpx.Client(transport=httpx.MockTransport(refuse)))
    with pytest.raises(ExecutorRequestFailed):
        down.execute({"operation": "read-file", "path": "/x"})

    garbled = HttpExecutor(
        "http://exec/run",
        client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>"))),
    )
    with pytest.raises(ExecutorResponseInvalid):
        garbled.execute({"operation": "read-file", "path": "/x"})


def test_local_executor_operations(tmp_path: Path):
    ex = LocalExecutor(str(tmp_path))
    root = str(tmp_path)

    assert ex.execute({"operation": "create-dir", "path": f"{root}/docs"}) == {"success": True}
    assert ex.execute({"operation": "write-file", "path": f"{root}/docs/a.txt", "content": "hello world"})["success"]
    assert ex.execute({"operation": "write-file", "path": f"{root}/b.txt", "content": "b"})["success"]
    assert ex.execute({"operation": "list-files", "path": root}) == {"success": True, "data": ["b.txt", "docs"]}

    edit = ex.execute({
        "operation": "edit-file", "path": f"{root}/docs/a.txt",
        "old_text": "world", "new_text": "there",
    })
    assert edit["success"]
    assert ex.execute({"operation": "read-file", "path": f"{root}/docs/a.txt"})["data"] == "hello there"

    missing = ex.execute({"operation": "edit-file", "path": f"{root}/b.txt", "old_text": "zzz", "new_text": ""})
    assert missing["success"] is False and "not found" in missing["error"]

    assert ex.execute({"operation": "delete-file", "path": f"{root}/b.txt"})["success"]
    assert ex.execute({"operation": "delete-dir", "path": f"{root}/docs"})["success"]
    assert sorted(p.name for p in tmp_path.iterdir()) == []


def test_local_executor_refuses_paths_outside_root(tmp_path: Path):
    ex = LocalExecutor(str(tmp_path / "jail"))
    out = ex.execute({"operation": "read-file", "path": str(tmp_path / "secret.txt")})
    assert out["success"] is False
    assert "outside" in out["error"]


def test_local_executor_reports_os_errors(tmp_path: Path):
    out = LocalExecutor(str(tmp_path)).execute({"operation": "read-file", "path": str(tmp_path / "nope.txt")})
    assert out["success"] is False
    assert out["error"]
