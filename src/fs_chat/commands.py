"""Embedded command markup: tokenizer, tolerant parser and permission gate.

Markup recognised inside free-form message text::

    <fs-command>
      <operation>write-file</operation>
      <path>notes/todo.txt</path>
      <content>buy milk</content>
    </fs-command>

``operation`` and ``path`` are required; ``content``, ``old_text`` and
``new_text`` are optional. Blocks missing a required field, or never closed,
are skipped and scanning carries on with the rest of the text.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

from .models import Command

__all__ = [
    "BLOCK_TAG",
    "FIELD_TAGS",
    "REQUIRED_CAPABILITY",
    "Token",
    "tokenize",
    "parse",
    "render",
    "required_capability",
    "allowed",
]

BLOCK_TAG = "fs-command"
FIELD_TAGS = ("operation", "path", "content", "old_text", "new_text")
REQUIRED_FIELDS = ("operation", "path")

# Hyphenated spellings are accepted for the two-word fields.
_ALIASES = {"old-text": "old_text", "new-text": "new_text"}

_TAG_RE = re.compile(
    r"<\s*(?P<close>/)?\s*(?P<name>fs-command|operation|path|content|old[_-]text|new[_-]text)\s*>",
    re.IGNORECASE,
)


# -----------------------------
# Tokenizer
# -----------------------------
@dataclass(frozen=True)
class Token:
    kind: str      # "open" | "close"
    name: str      # normalised tag name
    start: int     # offset of '<'
    end: int       # offset just past '>'


def tokenize(text: str) -> Iterator[Token]:
    """Yield the known open/close tags of ``text`` in order.

    Everything between tags is left in the source string; callers slice it
    with the token offsets so field values stay verbatim.
    """
    for m in _TAG_RE.finditer(text or ""):
        name = m.group("name").lower()
        name = _ALIASES.get(name, name)
        yield Token(
            kind="close" if m.group("close") else "open",
            name=name,
            start=m.start(),
            end=m.end(),
        )


# -----------------------------
# Parser
# -----------------------------
def parse(text: str) -> List[Command]:
    """Extract every well-formed command block, left to right."""
    tokens = list(tokenize(text))
    commands: List[Command] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.kind != "open" or tok.name != BLOCK_TAG:
            i += 1
            continue

        close_at = _find_block_close(tokens, i + 1)
        if close_at is None:
            # Unterminated: drop this opener and rescan from the next token.
            i += 1
            continue

        fields = _read_fields(text, tokens[i + 1:close_at])
        command = _build(fields)
        if command is not None:
            commands.append(command)
        i = close_at + 1
    return commands


def _find_block_close(tokens: List[Token], start: int) -> Optional[int]:
    for j in range(start, len(tokens)):
        tok = tokens[j]
        if tok.name != BLOCK_TAG:
            continue
        if tok.kind == "close":
            return j
        # A new block opened before this one closed.
        return None
    return None


def _read_fields(text: str, tokens: Iterable[Token]) -> Dict[str, str]:
    """Map field names to their raw values.

    An open tag runs to its own close tag; other field tags in between are
    part of the value. An open tag that is never closed is ignored.
    """
    tokens = list(tokens)
    fields: Dict[str, str] = {}
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        close_at = None
        if tok.kind == "open":
            close_at = next(
                (j for j in range(i + 1, len(tokens))
                 if tokens[j].kind == "close" and tokens[j].name == tok.name),
                None,
            )
        if close_at is None:
            i += 1
            continue
        # First occurrence of a field wins.
        fields.setdefault(tok.name, text[tok.end:tokens[close_at].start])
        i = close_at + 1
    return fields


def _build(fields: Dict[str, str]) -> Optional[Command]:
    operation = (fields.get("operation") or "").strip()
    path = (fields.get("path") or "").strip()
    if not operation or not path:
        return None
    return Command(
        operation=operation.lower(),
        path=path,
        content=fields.get("content"),
        old_text=fields.get("old_text"),
        new_text=fields.get("new_text"),
    )


def render(command: Command) -> str:
    """Render a Command back into markup."""
    parts = [
        f"<{BLOCK_TAG}>",
        f"<operation>{command.operation}</operation>",
        f"<path>{command.path}</path>",
    ]
    for name in ("content", "old_text", "new_text"):
        value = getattr(command, name)
        if value is not None:
            parts.append(f"<{name}>{value}</{name}>")
    parts.append(f"</{BLOCK_TAG}>")
    return "".join(parts)


# -----------------------------
# Permission gate
# -----------------------------
REQUIRED_CAPABILITY: Dict[str, str] = {
    "read-file": "read",
    "list-files": "read",
    "write-file": "write",
    "create-dir": "write",
    "edit-file": "write",
    "delete-file": "delete",
    "delete-dir": "delete",
}


def required_capability(operation: str) -> Optional[str]:
    return REQUIRED_CAPABILITY.get(operation)


def allowed(operation: str, permissions: Iterable[str]) -> bool:
    """True iff ``permissions`` holds the capability ``operation`` needs.

    Unknown operations are always denied.
    """
    capability = REQUIRED_CAPABILITY.get(operation)
    if capability is None:
        return False
    return capability in set(permissions)
