"""Per-event message state machine.

    Pending -> ProcessingCommands -> GeneratingResponse -> Completed | Failed

Every call runs to a terminal outcome (Completed, Failed, or Pending after a
transient failure) before returning. Intermediate states are only reported
through the ``on_state`` callback. The session value passed in is never
mutated; the updated value is returned with the final state.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence, Tuple

from . import commands as markup
from .dispatcher import CommandDispatcher
from .errors import GenerationFailed, PersistenceFailed, ResolutionError
from .generator import ResponseGenerator
from .history import HistoryAssembler
from .models import Command, Message, MessageState, MessageStatus, SessionState
from .retry import classify
from .store import StoreAdapter

logger = logging.getLogger(__name__)

StateCallback = Callable[[MessageState], None]
Outcome = Tuple[MessageState, SessionState]

# Errors that abort a pipeline step and go through the retry classifier.
STEP_ERRORS = (GenerationFailed, PersistenceFailed, ResolutionError)


def _ignore(state: MessageState) -> None:
    return None


def _reporter(on_state: Optional[StateCallback]) -> StateCallback:
    """Wrap ``on_state`` so a failing callback cannot abort processing."""
    if on_state is None:
        return _ignore

    def emit(state: MessageState) -> None:
        try:
            on_state(state)
        except Exception:
            logger.exception("state callback failed for message %s", state.message.id)

    return emit


class MessagePipeline:
    def __init__(
        self,
        store: StoreAdapter,
        generator: ResponseGenerator,
        *,
        dispatcher: Optional[CommandDispatcher] = None,
        assembler: Optional[HistoryAssembler] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.dispatcher = dispatcher or CommandDispatcher()
        self.assembler = assembler or HistoryAssembler(store)

    # ----------------------------
    # Entry points
    # ----------------------------
    def submit(
        self,
        session: SessionState,
        content: str,
        commands: Optional[Sequence[Command]] = None,
        *,
        on_state: Optional[StateCallback] = None,
    ) -> Outcome:
        """Save a new user message on top of ``session.head`` and process it.

        When ``commands`` is not given they are parsed from ``content``.
        """
        if commands is None:
            commands = markup.parse(content)
        message = Message(
            role="user",
            content=content,
            parent=session.head,
            commands=list(commands) or None,
        )
        try:
            message = self.store.save_message(message)
        except PersistenceFailed as e:
            return self._fail(MessageState(message=message), str(e), _reporter(on_state)), session
        session = session.with_head(message.id)
        return self.process(MessageState(message=message), session, on_state=on_state)

    def retry(
        self,
        session: SessionState,
        message_id: str,
        previous: Optional[MessageState] = None,
        *,
        on_state: Optional[StateCallback] = None,
    ) -> Outcome:
        """Process a stored message again as a fresh Pending invocation.

        Commands that already carry results are not executed again; a user
        message always gets a new response generation attempt. The retry
        count of ``previous`` is carried over.

        Only messages on the chain ending at ``session.head`` can be retried.
        Raises ResolutionError for any other id, or if the chain is broken.
        """
        message = next(
            (m for m in self.assembler.assemble(session.head) if m.id == message_id),
            None,
        )
        if message is None:
            raise ResolutionError(message_id, "not part of this session's conversation")
        state = MessageState(
            message=message,
            retries=previous.retries if previous is not None else 0,
            last_error=previous.last_error if previous is not None else None,
        )
        logger.info("retrying message %s (retries=%d)", message_id, state.retries)
        return self.process(state, session, on_state=on_state)

    def history(self, session: SessionState) -> List[Message]:
        return self.assembler.assemble(session.head)

    # ----------------------------
    # State machine
    # ----------------------------
    def process(
        self,
        state: MessageState,
        session: SessionState,
        *,
        on_state: Optional[StateCallback] = None,
    ) -> Outcome:
        emit = _reporter(on_state)
        state = state.advance(MessageStatus.PENDING)
        message = state.message

        # 1. Execute the message's own commands and re-save it with results.
        if message.commands and message.results is None:
            state = state.advance(MessageStatus.PROCESSING_COMMANDS)
            emit(state)
            results = self.dispatcher.dispatch(message.commands, session)
            try:
                message = self.store.save_message(message.with_results(results))
            except PersistenceFailed as e:
                return self._fail(state, str(e), emit), session
            session = session.with_head(message.id)
            state = state.advance(MessageStatus.PROCESSING_COMMANDS, message=message)

        if message.role != "user":
            state = state.advance(MessageStatus.COMPLETED)
            emit(state)
            return state, session

        # 2. Ask the backend for a reply and run whatever it asks for.
        state = state.advance(MessageStatus.GENERATING_RESPONSE)
        emit(state)
        try:
            history = self.assembler.assemble(message.id)
            text = self.generator.generate(
                history,
                filesystem_root=session.filesystem_root,
                permissions=session.permissions,
            )
            reply = self._execute_reply(
                Message(role="assistant", content=text, parent=message.id), session
            )
            reply = self.store.save_message(reply)
        except STEP_ERRORS as e:
            return self._fail(state, str(e), emit), session

        session = session.with_head(reply.id)
        state = state.advance(MessageStatus.COMPLETED)
        emit(state)
        logger.info("message %s completed with reply %s", message.id, reply.id)
        return state, session

    def _execute_reply(self, reply: Message, session: SessionState) -> Message:
        found = markup.parse(reply.content)
        if not found:
            return reply
        reply = reply.model_copy(update={"commands": found})
        return reply.with_results(self.dispatcher.dispatch(found, session))

    @staticmethod
    def _fail(state: MessageState, error_text: str, emit: StateCallback) -> MessageState:
        state = classify(state.model_copy(update={"last_error": error_text}), error_text)
        emit(state)
        return state
