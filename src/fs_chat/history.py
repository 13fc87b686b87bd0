"""Rebuild a conversation by walking parent links back from ``head``."""
from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError

from .errors import PersistenceFailed, ResolutionError
from .models import Message
from .store import StoreAdapter

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10_000


class HistoryAssembler:
    def __init__(self, store: StoreAdapter, *, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.store = store
        self.max_depth = max_depth

    def assemble(self, head: Optional[str]) -> List[Message]:
        """Return the chain ending at ``head``, oldest first.

        Raises ResolutionError if any link cannot be loaded or parsed; nothing
        is returned for a broken chain.
        """
        if head is None:
            return []

        chain: List[Message] = []
        seen = set()
        current: Optional[str] = head
        while current is not None:
            if current in seen:
                raise ResolutionError(current, "parent chain contains a cycle")
            if len(chain) >= self.max_depth:
                raise ResolutionError(current, f"chain longer than {self.max_depth}")
            seen.add(current)

            try:
                payload = self.store.get(current)
                message = Message.from_bytes(payload, current)
            except PersistenceFailed as e:
                raise ResolutionError(current, str(e)) from e
            except ValidationError as e:
                raise ResolutionError(current, f"undeserializable record: {e}") from e

            chain.append(message)
            current = message.parent

        chain.reverse()
        logger.debug("assembled %d messages from head %s", len(chain), head)
        return chain
