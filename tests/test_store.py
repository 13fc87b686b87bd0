from __future__ import annotations

import base64
import json
from pathlib import Path

import httpx
import pytest

from fs_chat.errors import PersistenceFailed
from fs_chat.models import Message
from fs_chat.store import DiskStoreBackend, HttpStoreBackend, MemoryStoreBackend, StoreAdapter


def test_memory_store_assigns_sequential_ids(store: StoreAdapter):
    assert store.put(b"a") == "1"
    assert store.put(b"b") == "2"
    assert store.get("1") == b"a"
    assert store.get("2") == b"b"


def test_get_missing_record_raises(store: StoreAdapter):
    with pytest.raises(PersistenceFailed):
        store.get("42")


class _BrokenBackend:
    def __init__(self, response):
        self.response = response

    def request(self, req):
        return self.response


@pytest.mark.parametrize(
    "response",
    [
        {"status": "error", "error": "disk full"},
        {"status": "ok"},                 # no key
        {"status": "ok", "key": ""},
        "not a dict",
    ],
)
def test_put_failures_raise_persistence_failed(response):
    adapter = StoreAdapter(_BrokenBackend(response))
    with pytest.raises(PersistenceFailed):
        adapter.put(b"x")


def test_get_with_non_bytes_value_is_malformed():
    adapter = StoreAdapter(_BrokenBackend({"status": "ok", "value": {"oops": 1}}))
    with pytest.raises(PersistenceFailed, match="malformed"):
        adapter.get("1")


def test_save_message_stamps_id_and_never_stores_it(store: StoreAdapter, store_backend: MemoryStoreBackend):
    saved = store.save_message(Message(role="user", content="hi"))
    assert saved.id == "1"
    raw = json.loads(store.get("1"))
    assert "id" not in raw
    assert raw == {"role": "user", "content": "hi"}


def test_resave_produces_new_record(store: StoreAdapter, store_backend: MemoryStoreBackend):
    first = store.save_message(Message(role="user", content="hi"))
    second = store.save_message(first)
    assert first.id != second.id
    assert len(store_backend) == 2


def test_load_message_rejects_non_message_payload(store: StoreAdapter):
    key = store.put(b'{"unexpected": true}')
    with pytest.raises(PersistenceFailed):
        store.load_message(key)


def test_disk_store_roundtrip(tmp_path: Path):
    adapter = StoreAdapter(DiskStoreBackend(str(tmp_path)))
    k1 = adapter.put(b"one")
    k2 = adapter.put(b"two")
    assert k1 != k2
    assert adapter.get(k1) == b"one"
    assert adapter.get(k2) == b"two"
    assert len(list((tmp_path / "records").glob("*.json"))) == 2


def test_disk_store_rejects_foreign_keys(tmp_path: Path):
    adapter = StoreAdapter(DiskStoreBackend(str(tmp_path)))
    with pytest.raises(PersistenceFailed, match="invalid key"):
        adapter.get("../../etc/passwd")


def test_http_store_encodes_bytes_as_base64():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        if body["action"] == "put":
            return httpx.Response(200, json={"status": "ok", "key": "k1"})
        return httpx.Response(200, json={"status": "ok", "value": base64.b64encode(b"payload").decode()})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    adapter = StoreAdapter(HttpStoreBackend("http://store/rpc", client=client))

    assert adapter.put(b"payload") == "k1"
    assert seen[0]["value"] == base64.b64encode(b"payload").decode()
    assert adapter.get("k1") == b"payload"
    assert seen[1] == {"action": "get", "id": "k1"}


def test_http_store_transport_error_becomes_persistence_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    adapter = StoreAdapter(HttpStoreBackend("http://store/rpc", client=client))
    with pytest.raises(PersistenceFailed, match="transport error"):
        adapter.put(b"x")


def test_http_store_server_error_becomes_persistence_failed():
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
    adapter = StoreAdapter(HttpStoreBackend("http://store/rpc", client=client))
    with pytest.raises(PersistenceFailed):
        adapter.get("k1")
