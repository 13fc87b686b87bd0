"""Append-only record store: protocol backends plus the put/get adapter.

Every backend answers the same request/response protocol:

    {"action": "put", "value": bytes}  -> {"status": "ok", "key": id}
    {"action": "get", "id": id}        -> {"status": "ok", "value": bytes}

and ``{"status": "error", "error": str}`` on failure. Records are never
updated or deleted; ids are opaque strings chosen by the backend.
"""
from __future__ import annotations

import base64
import logging
import os
import re
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from .errors import PersistenceFailed
from .models import Message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)


class StoreBackend(Protocol):
    def request(self, req: Dict[str, Any]) -> Dict[str, Any]:
        ...


def _error(text: str) -> Dict[str, Any]:
    return {"status": "error", "error": text}


# -----------------------------
# Backends
# -----------------------------
class MemoryStoreBackend:
    """In-process store with sequential ids ("1", "2", ...)."""

    def __init__(self) -> None:
        self._records: Dict[str, bytes] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def request(self, req: Dict[str, Any]) -> Dict[str, Any]:
        action = req.get("action")
        with self._lock:
            if action == "put":
                value = req.get("value")
                if not isinstance(value, (bytes, bytearray)):
                    return _error("put requires a bytes value")
                self._counter += 1
                key = str(self._counter)
                self._records[key] = bytes(value)
                return {"status": "ok", "key": key}
            if action == "get":
                key = str(req.get("id"))
                if key not in self._records:
                    return _error(f"record {key!r} not found")
                return {"status": "ok", "value": self._records[key]}
        return _error(f"unknown action {action!r}")

    def __len__(self) -> int:
        return len(self._records)


_KEY_RE = re.compile(r"^[0-9a-f]{32}$")


class DiskStoreBackend:
    """One file per record under ``data_dir``; files are written once.

    Layout:
        data_dir/
          records/<uuid4 hex>.json
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.records_dir = self.root / "records"
        self.records_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.records_dir / f"{key}.json"

    def request(self, req: Dict[str, Any]) -> Dict[str, Any]:
        action = req.get("action")
        if action == "put":
            value = req.get("value")
            if not isinstance(value, (bytes, bytearray)):
                return _error("put requires a bytes value")
            key = uuid.uuid4().hex
            try:
                self._write_once(self._path(key), bytes(value))
            except OSError as e:
                logger.exception("disk store write failed: %s", e)
                return _error(f"write failed: {e}")
            return {"status": "ok", "key": key}
        if action == "get":
            key = str(req.get("id"))
            # Keys are ours; anything else could escape the records dir.
            if not _KEY_RE.match(key):
                return _error(f"invalid key {key!r}")
            path = self._path(key)
            if not path.exists():
                return _error(f"record {key!r} not found")
            try:
                return {"status": "ok", "value": path.read_bytes()}
            except OSError as e:
                return _error(f"read failed: {e}")
        return _error(f"unknown action {action!r}")

    @staticmethod
    def _write_once(path: Path, data: bytes) -> None:
        with tempfile.NamedTemporaryFile("wb", delete=False, dir=str(path.parent)) as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp_name = tmp.name
        os.replace(tmp_name, path)


class HttpStoreBackend:
    """Client for an external store service speaking the protocol as JSON.

    Bytes travel base64-encoded in ``value``.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: Optional[httpx.Timeout] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout or DEFAULT_TIMEOUT)

    def request(self, req: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(req)
        if isinstance(body.get("value"), (bytes, bytearray)):
            body["value"] = base64.b64encode(body["value"]).decode("ascii")
        try:
            r = self._client.post(self.url, json=body)
            r.raise_for_status()
            out = r.json()
        except httpx.HTTPError as e:
            logger.warning("store request %s failed: %s", req.get("action"), e)
            return _error(f"store transport error: {e}")
        except ValueError as e:
            return _error(f"store returned non-JSON body: {e}")

        if not isinstance(out, dict):
            return _error("store returned a non-object body")
        if isinstance(out.get("value"), str):
            try:
                out["value"] = base64.b64decode(out["value"], validate=True)
            except ValueError as e:
                return _error(f"store value is not base64: {e}")
        return out

    def close(self) -> None:
        self._client.close()


# -----------------------------
# Adapter
# -----------------------------
class StoreAdapter:
    """put/get over a backend, raising PersistenceFailed on any protocol failure."""

    def __init__(self, backend: StoreBackend) -> None:
        self.backend = backend

    def put(self, value: bytes) -> str:
        resp = self.backend.request({"action": "put", "value": value})
        if not isinstance(resp, dict) or resp.get("status") != "ok":
            raise PersistenceFailed(f"put failed: {_reason(resp)}")
        key = resp.get("key")
        if key is None or key == "":
            raise PersistenceFailed("put failed: store returned no id")
        return str(key)

    def get(self, key: str) -> bytes:
        resp = self.backend.request({"action": "get", "id": key})
        if not isinstance(resp, dict) or resp.get("status") != "ok":
            raise PersistenceFailed(f"get {key!r} failed: {_reason(resp)}")
        value = resp.get("value")
        if not isinstance(value, (bytes, bytearray)):
            raise PersistenceFailed(f"get {key!r} failed: malformed payload")
        return bytes(value)

    # --------- message helpers ----------
    def save_message(self, message: Message) -> Message:
        """Persist ``message`` and return it stamped with its new id."""
        key = self.put(message.to_bytes())
        logger.debug("saved %s message %s (parent=%s)", message.role, key, message.parent)
        return message.model_copy(update={"id": key})

    def load_message(self, key: str) -> Message:
        payload = self.get(key)
        try:
            return Message.from_bytes(payload, key)
        except ValidationError as e:
            raise PersistenceFailed(f"record {key!r} is not a message: {e}") from e


def _reason(resp: Any) -> str:
    if isinstance(resp, dict):
        return str(resp.get("error") or resp.get("status") or "unknown error")
    return "malformed response"
