"""FastAPI transport: session creation over HTTP, session events over WebSocket."""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

import anyio
import httpx
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from .config import load_config
from .dispatcher import Executor, HttpExecutor, LocalExecutor
from .errors import FsChatError
from .generator import AnthropicBackend, BackendConfig, GenerationBackend, ResponseGenerator
from .history import HistoryAssembler
from .models import CAPABILITIES, Command, Message, MessageState, SessionState
from .pipeline import MessagePipeline
from .sessions import SessionHandle, SessionRegistry
from .store import (
    DiskStoreBackend,
    HttpStoreBackend,
    MemoryStoreBackend,
    StoreAdapter,
    StoreBackend,
)

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[str], Optional[Executor]]


# -----------------------------
# Pydantic request/response
# -----------------------------
class StartChatRequest(BaseModel):
    fs_path: str = Field(..., min_length=1, description="Filesystem root for the session.")
    permissions: List[str] = Field(..., min_length=1)


class StartChatResponse(BaseModel):
    session_id: str
    url: str
    websocket: str


class SendMessageEvent(BaseModel):
    content: str = Field(..., min_length=1)
    commands: Optional[List[Command]] = None


class RetryMessageEvent(BaseModel):
    message_id: str = Field(..., min_length=1)


# -----------------------------
# Wiring from config
# -----------------------------
def _make_store_backend(cfg: Dict[str, Any]) -> StoreBackend:
    store_cfg = cfg.get("store", {})
    kind = str(store_cfg.get("backend", "disk")).lower()
    if kind == "memory":
        return MemoryStoreBackend()
    if kind == "http":
        url = store_cfg.get("url")
        if not url:
            raise RuntimeError("store.backend is 'http' but store.url is not set")
        return HttpStoreBackend(url, timeout=httpx.Timeout(float(store_cfg.get("timeout", 30.0)), connect=5.0))
    return DiskStoreBackend(store_cfg.get("data_dir") or "data")


def _make_backend(cfg: Dict[str, Any]) -> GenerationBackend:
    gen = cfg.get("generation", {})
    return AnthropicBackend(
        BackendConfig(
            api_url=gen.get("api_url", BackendConfig.api_url),
            model=gen.get("model", BackendConfig.model),
            api_key_env=gen.get("api_key_env", BackendConfig.api_key_env),
            anthropic_version=gen.get("anthropic_version", BackendConfig.anthropic_version),
            timeout=float(gen.get("timeout", BackendConfig.timeout)),
        )
    )


def _make_executor_factory(cfg: Dict[str, Any], closers: List[Callable[[], None]]) -> ExecutorFactory:
    ex_cfg = cfg.get("executor", {})
    kind = str(ex_cfg.get("kind", "local")).lower()
    if kind == "none":
        return lambda root: None
    if kind == "http":
        url = ex_cfg.get("url")
        if not url:
            raise RuntimeError("executor.kind is 'http' but executor.url is not set")
        shared = HttpExecutor(url, timeout=httpx.Timeout(float(ex_cfg.get("timeout", 60.0)), connect=5.0))
        closers.append(shared.close)
        return lambda root: shared
    return lambda root: LocalExecutor(root)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    store_backend: Optional[StoreBackend] = None,
    backend: Optional[GenerationBackend] = None,
    executor_factory: Optional[ExecutorFactory] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    server_cfg = cfg.get("server", {})
    public_url = str(server_cfg.get("public_url", "")).rstrip("/")
    # http://host -> ws://host, https://host -> wss://host
    socket_base = "ws" + public_url[4:] if public_url.startswith("http") else public_url

    # Clients the app builds itself are closed on shutdown; injected ones are left to the caller.
    closers: List[Callable[[], None]] = []
    if store_backend is None:
        store_backend = _make_store_backend(cfg)
        if hasattr(store_backend, "close"):
            closers.append(store_backend.close)
    if backend is None:
        backend = _make_backend(cfg)
        closers.append(backend.close)
    if executor_factory is None:
        executor_factory = _make_executor_factory(cfg, closers)

    store = StoreAdapter(store_backend)
    pipeline = MessagePipeline(
        store,
        ResponseGenerator(
            backend,
            max_output_tokens=int(cfg.get("generation", {}).get("max_output_tokens", 4096)),
        ),
        assembler=HistoryAssembler(store, max_depth=int(cfg.get("history", {}).get("max_depth", 10000))),
    )
    registry = SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for close in closers:
            close()
        logger.info("closed %d backend clients", len(closers))

    app = FastAPI(title="fs_chat", version="0.1.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.pipeline = pipeline
    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_cfg.get("cors_origins") or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions": len(registry.ids()),
            "store": type(store.backend).__name__,
        }

    @app.post("/start-chat", response_model=StartChatResponse)
    def start_chat(req: StartChatRequest) -> StartChatResponse:
        unknown = sorted(set(req.permissions) - set(CAPABILITIES))
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown permissions: {', '.join(unknown)}")

        root = req.fs_path.rstrip("/") or "/"
        state = SessionState(
            store_id=type(store.backend).__name__,
            filesystem_root=root,
            permissions=frozenset(req.permissions),
            executor=executor_factory(root),
        )
        handle = registry.create(state)
        logger.info("started session %s at %s with %s", handle.session_id, root, sorted(state.permissions))
        return StartChatResponse(
            session_id=handle.session_id,
            url=f"{socket_base}/ws/{handle.session_id}",
            websocket=f"/ws/{handle.session_id}",
        )

    @app.get("/sessions/{session_id}/messages")
    def get_messages(session_id: str) -> Dict[str, Any]:
        try:
            with registry.checkout(session_id) as handle:
                messages = pipeline.history(handle.state)
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown session.")
        except FsChatError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"messages": [_dump(m) for m in messages]}

    @app.websocket("/ws/{session_id}")
    async def session_socket(websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        if registry.get(session_id) is None:
            await websocket.send_json({"type": "error", "error": f"unknown session {session_id}"})
            await websocket.close(code=4404)
            return

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event = json.loads(raw)
                except ValueError:
                    await websocket.send_json({"type": "error", "error": "event is not JSON"})
                    continue
                if not isinstance(event, dict):
                    await websocket.send_json({"type": "error", "error": "event must be an object"})
                    continue
                await _handle_event(websocket, session_id, event)
        except WebSocketDisconnect:
            logger.info("session %s disconnected", session_id)

    async def _handle_event(websocket: WebSocket, session_id: str, event: Dict[str, Any]) -> None:
        kind = event.get("type")

        def push_state(state: MessageState) -> None:
            # Runs in the worker thread; hop back to the event loop to send.
            anyio.from_thread.run(websocket.send_json, _state_event(state))

        try:
            if kind == "get_messages":
                messages = await run_in_threadpool(_history, session_id)
                await websocket.send_json({"type": "message_update", "messages": [_dump(m) for m in messages]})
            elif kind == "send_message":
                req = SendMessageEvent.model_validate(event)
                await run_in_threadpool(
                    _run, session_id,
                    lambda handle: pipeline.submit(handle.state, req.content, req.commands, on_state=push_state),
                )
                await _push_history(websocket, session_id)
            elif kind == "retry_message":
                # The browser client sends camelCase.
                if "message_id" not in event and "messageId" in event:
                    event = {**event, "message_id": event["messageId"]}
                req = RetryMessageEvent.model_validate(event)
                await run_in_threadpool(
                    _run, session_id,
                    lambda handle: pipeline.retry(
                        handle.state,
                        req.message_id,
                        handle.message_states.get(req.message_id),
                        on_state=push_state,
                    ),
                )
                await _push_history(websocket, session_id)
            else:
                await websocket.send_json({"type": "error", "error": f"unknown event type {kind!r}"})
        except ValidationError as e:
            await websocket.send_json({"type": "error", "error": f"invalid {kind} event: {e.errors()}"})
        except FsChatError as e:
            logger.warning("session %s: %s failed: %s", session_id, kind, e)
            await websocket.send_json({"type": "error", "error": str(e)})

    def _run(session_id: str, step: Callable[[SessionHandle], Any]) -> MessageState:
        with registry.checkout(session_id) as handle:
            state, new_session = step(handle)
            handle.state = new_session
            if state.message.id is not None:
                handle.message_states[state.message.id] = state
            return state

    def _history(session_id: str) -> List[Message]:
        with registry.checkout(session_id) as handle:
            return pipeline.history(handle.state)

    async def _push_history(websocket: WebSocket, session_id: str) -> None:
        messages = await run_in_threadpool(_history, session_id)
        await websocket.send_json({"type": "message_update", "messages": [_dump(m) for m in messages]})

    return app


def _dump(message: Message) -> Dict[str, Any]:
    return message.model_dump(mode="json", exclude_none=True)


def _state_event(state: MessageState) -> Dict[str, Any]:
    return {"type": "message_state_update", "message_state": state.model_dump(mode="json")}
