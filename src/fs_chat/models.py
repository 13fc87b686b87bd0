"""Data model shared by the pipeline, the store and the transport."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# -----------------------------
# Vocabulary
# -----------------------------
OPERATIONS = (
    "read-file",
    "write-file",
    "list-files",
    "create-dir",
    "delete-file",
    "edit-file",
    "delete-dir",
)

CAPABILITIES = ("read", "write", "delete")

Role = Literal["user", "assistant"]


class MessageStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING_COMMANDS = "ProcessingCommands"
    GENERATING_RESPONSE = "GeneratingResponse"
    COMPLETED = "Completed"
    FAILED = "Failed"


# -----------------------------
# Records
# -----------------------------
class Command(BaseModel):
    """A filesystem operation extracted from message text."""

    model_config = ConfigDict(frozen=True)

    # Kept as a plain string: unknown names must survive parsing so the
    # permission gate can deny them.
    operation: str
    path: str
    content: Optional[str] = None
    old_text: Optional[str] = None
    new_text: Optional[str] = None


class CommandResult(BaseModel):
    """Outcome of one Command, stored alongside it on the message."""

    model_config = ConfigDict(frozen=True)

    success: bool
    operation: str
    path: str
    data: Optional[str] = None
    error: Optional[str] = None


class Message(BaseModel):
    """One immutable conversation turn.

    ``id`` is assigned by the store and is never part of the stored payload;
    it is stamped back onto the model when the record is loaded or saved.
    """

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    parent: Optional[str] = None
    id: Optional[str] = None
    commands: Optional[List[Command]] = None
    results: Optional[List[CommandResult]] = None

    def to_bytes(self) -> bytes:
        return self.model_dump_json(exclude={"id"}, exclude_none=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes, message_id: str) -> "Message":
        """Deserialize a stored payload and stamp the store id onto it."""
        return cls.model_validate_json(payload).model_copy(update={"id": message_id})

    def with_results(self, results: List[CommandResult]) -> "Message":
        if len(results) != len(self.commands or []):
            raise ValueError(
                f"expected {len(self.commands or [])} results, got {len(results)}"
            )
        return self.model_copy(update={"results": list(results), "id": None})


class MessageState(BaseModel):
    """Transient processing state of a message; never persisted."""

    model_config = ConfigDict(frozen=True)

    message: Message
    status: MessageStatus = MessageStatus.PENDING
    retries: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    def advance(self, status: MessageStatus, **changes: Any) -> "MessageState":
        return self.model_copy(update={"status": status, **changes})


# -----------------------------
# Session value
# -----------------------------
@dataclass(frozen=True)
class SessionState:
    """Per-session value handed into and back out of each pipeline call.

    ``executor`` is any object with ``execute(request: dict) -> dict``;
    ``None`` means filesystem operations are unavailable.
    """

    store_id: str
    filesystem_root: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    head: Optional[str] = None
    executor: Any = None

    def with_head(self, head: Optional[str]) -> "SessionState":
        return replace(self, head=head)
