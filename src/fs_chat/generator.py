"""Context assembly and the call to the generation backend."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx

from . import commands as markup
from .errors import GenerationFailed
from .models import OPERATIONS, Command, CommandResult, Message

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 4096


class GenerationBackend(Protocol):
    def complete(self, request: Dict[str, Any]) -> Any:
        """Send ``{system_preamble, messages, max_output_tokens}``; return the parsed body."""
        ...


# -----------------------------
# Preamble
# -----------------------------
_EXAMPLE_FIELDS: Dict[str, Dict[str, str]] = {
    "write-file": {"content": "TEXT"},
    "edit-file": {"old_text": "EXACT TEXT", "new_text": "REPLACEMENT"},
}


def _vocabulary() -> str:
    entries = []
    for op in OPERATIONS:
        example = Command(operation=op, path="PATH", **_EXAMPLE_FIELDS.get(op, {}))
        entries.append(f"{op} (needs {markup.required_capability(op)})\n{markup.render(example)}")
    return "\n\n".join(entries)


_VOCABULARY = _vocabulary()


def build_preamble(filesystem_root: str, permissions: Iterable[str]) -> str:
    perms = ", ".join(sorted(permissions)) or "none"
    return (
        "You are an assistant with access to a filesystem through commands "
        "embedded in your replies. Each command is one block, exactly as shown:\n\n"
        f"{_VOCABULARY}\n\n"
        f"Filesystem root: {filesystem_root}\n"
        "Relative paths are resolved against the root; \".\" is the root itself.\n"
        f"Granted permissions: {perms}\n"
        "Commands needing a permission you do not have will be refused. "
        "Results of executed commands are returned to you as <fs-result> blocks "
        "in the next user turn."
    )


# -----------------------------
# Result rendering
# -----------------------------
def render_results(role: str, results: Iterable[CommandResult]) -> str:
    lines = [f'<fs-result role="{role}">']
    for r in results:
        lines.append(f"operation: {r.operation}")
        lines.append(f"path: {r.path}")
        lines.append(f"success: {'true' if r.success else 'false'}")
        if r.data is not None:
            lines.append(f"data: {r.data}")
        if r.error is not None:
            lines.append(f"error: {r.error}")
    lines.append("</fs-result>")
    return "\n".join(lines)


def recent_result_blocks(history: List[Message]) -> str:
    """Render the results carried by the last two messages of ``history``."""
    if len(history) <= 1:
        return ""
    blocks = [
        render_results(m.role, m.results)
        for m in history[-2:]
        if m.results
    ]
    return "\n".join(blocks)


# -----------------------------
# Generator
# -----------------------------
class ResponseGenerator:
    def __init__(
        self,
        backend: GenerationBackend,
        *,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> None:
        self.backend = backend
        self.max_output_tokens = max_output_tokens

    def build_request(
        self,
        history: List[Message],
        *,
        filesystem_root: str,
        permissions: Iterable[str],
    ) -> Dict[str, Any]:
        blocks = recent_result_blocks(history)
        last_user = max(
            (i for i, m in enumerate(history) if m.role == "user"),
            default=None,
        )
        messages: List[Dict[str, str]] = []
        for i, m in enumerate(history):
            content = m.content
            if blocks and i == last_user:
                content = f"{content}\n\n{blocks}"
            messages.append({"role": m.role, "content": content})
        return {
            "system_preamble": build_preamble(filesystem_root, permissions),
            "messages": messages,
            "max_output_tokens": self.max_output_tokens,
        }

    def generate(
        self,
        history: List[Message],
        *,
        filesystem_root: str,
        permissions: Iterable[str],
    ) -> str:
        """Return the reply text for ``history``; the preamble is rebuilt on every call."""
        request = self.build_request(
            history, filesystem_root=filesystem_root, permissions=permissions
        )
        try:
            body = self.backend.complete(request)
        except GenerationFailed:
            raise
        except Exception as e:
            raise GenerationFailed(f"generation backend error: {e}") from e
        return extract_text(body)


def extract_text(body: Any) -> str:
    """First text field of the first content item."""
    if body is None:
        raise GenerationFailed("generation backend returned no body")
    try:
        first = body["content"][0]
        text = first["text"]
    except (KeyError, IndexError, TypeError) as e:
        raise GenerationFailed(f"unexpected generation response shape: {e!r}") from e
    if not isinstance(text, str):
        raise GenerationFailed("generation response text is not a string")
    return text


# -----------------------------
# HTTP backend
# -----------------------------
@dataclass
class BackendConfig:
    api_url: str = "https://api.anthropic.com/v1/messages"
    model: str = "claude-sonnet-4-5"
    api_key_env: str = "ANTHROPIC_API_KEY"
    anthropic_version: str = "2023-06-01"
    timeout: float = 120.0


class AnthropicBackend:
    """Messages-style HTTP API client."""

    def __init__(self, cfg: Optional[BackendConfig] = None, *, client: Optional[httpx.Client] = None) -> None:
        self.cfg = cfg or BackendConfig()
        timeout = httpx.Timeout(self.cfg.timeout, connect=5.0)
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "content-type": "application/json",
            "anthropic-version": self.cfg.anthropic_version,
        }
        key = os.environ.get(self.cfg.api_key_env)
        if key:
            headers["x-api-key"] = key
        return headers

    def complete(self, request: Dict[str, Any]) -> Any:
        payload = {
            "model": self.cfg.model,
            "system": request["system_preamble"],
            "messages": request["messages"],
            "max_tokens": request["max_output_tokens"],
        }
        try:
            r = self._client.post(self.cfg.api_url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise GenerationFailed(f"generation request failed: {e}") from e

        if r.status_code >= 400:
            # Body carries the error type (e.g. overloaded_error) the retry logic keys on.
            logger.warning("generation backend returned %d: %s", r.status_code, r.text[:500])
            raise GenerationFailed(f"generation backend HTTP {r.status_code}: {r.text}")
        if not r.content:
            raise GenerationFailed("generation backend returned an empty body")
        try:
            return r.json()
        except ValueError as e:
            raise GenerationFailed(f"generation response is not JSON: {e}") from e

    def close(self) -> None:
        self._client.close()
