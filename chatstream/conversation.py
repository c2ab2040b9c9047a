"""
Conversation controller.

Owns the message list for one conversation and is the only place it changes.
Sessions never touch the list directly: they emit patches tagged with their
session id, and patches from anything but the active session are dropped.

Starting a send while another response is still streaming either supersedes
it (stop, then wait for its terminal state) or is rejected with
``InvalidStateError``, depending on ``supersede_active``.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable

import structlog

from .config import Configuration
from .conversation_utils import build_messages_request, build_query_request
from .exceptions import InvalidStateError, StreamError, TransportError
from .logging_utils import log_operation, operation_context
from .models import Message
from .streaming.models import Patch, SessionResult, StreamMode, StreamRequest
from .streaming.reducer import apply_patch
from .streaming.session import DiagnosticListener, StreamSession
from .transport import Transport

logger = structlog.get_logger(__name__)

SnapshotListener = Callable[[tuple[Message, ...]], None]


class ConversationController:
    """
    Message list owner for a single conversation.

    1. Appends the user's message
    2. Starts a streaming session for the reply
    3. Applies the session's patches and publishes snapshots
    4. Records transport failures in ``error`` instead of raising
    """

    def __init__(
        self,
        transport: Transport,
        endpoint: str,
        *,
        mode: StreamMode = StreamMode.NDJSON,
        conversation_id: str | None = None,
        greeting: str | None = None,
        reset_greeting: str | None = None,
        fallback_text: str | None = None,
        supersede_active: bool = True,
        deadline_seconds: float | None = None,
        encoding: str = "utf-8",
        on_diagnostic: DiagnosticListener | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.mode = mode
        self._transport = transport
        self._conversation_id = conversation_id or uuid.uuid4().hex
        self._reset_greeting = reset_greeting if reset_greeting is not None else greeting
        self._fallback_text = fallback_text
        self._supersede_active = supersede_active
        self._deadline_seconds = deadline_seconds
        self._encoding = encoding
        self._on_diagnostic = on_diagnostic

        self._messages: tuple[Message, ...] = (
            (Message.assistant(greeting),) if greeting else ()
        )
        self._listeners: list[SnapshotListener] = []
        self._active: StreamSession | None = None
        self._active_task: asyncio.Task[SessionResult] | None = None
        self._error: StreamError | None = None
        self._send_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls, configuration: Configuration, transport: Transport, **overrides
    ) -> ConversationController:
        """Build a controller from the ``stream`` and ``chat`` sections."""
        stream_config = configuration.get_stream_config()
        chat_config = configuration.get_chat_config()
        kwargs = {
            "endpoint": stream_config["endpoint"],
            "mode": StreamMode(stream_config["mode"]),
            "encoding": stream_config["encoding"],
            "deadline_seconds": stream_config["deadline_seconds"],
            "greeting": chat_config["greeting"],
            "reset_greeting": chat_config["reset_greeting"],
            "fallback_text": chat_config["fallback_message"],
            "supersede_active": chat_config["supersede_active"],
        }
        kwargs.update(overrides)
        return cls(transport, **kwargs)

    # ------------------------------------------------------------------ #
    # Observable state                                                    #
    # ------------------------------------------------------------------ #

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def error(self) -> StreamError | None:
        return self._error

    @property
    def active_session(self) -> StreamSession | None:
        return self._active

    @property
    def is_streaming(self) -> bool:
        return self._active is not None and not self._active.state.is_terminal

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a snapshot listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------ #
    # Operations                                                          #
    # ------------------------------------------------------------------ #

    async def send(self, text: str) -> SessionResult | None:
        """
        Send a user message and stream the reply.

        Returns:
            The session result, or None for blank input.

        Raises:
            InvalidStateError: A reply is streaming and superseding is off.
        """
        query = text.strip()
        if not query:
            return None

        async with self._send_lock:
            if self.is_streaming:
                if not self._supersede_active:
                    raise InvalidStateError(
                        "A response is already streaming for this conversation",
                        state=self._active.state,
                        session_id=self._active.id,
                    )
                logger.info(
                    "Superseding active session",
                    conversation_id=self._conversation_id,
                    session_id=self._active.id,
                )
                await self._stop_active()

            session = StreamSession(
                self._transport,
                mode=self.mode,
                on_patch=self._apply_patch,
                on_diagnostic=self._on_diagnostic,
                encoding=self._encoding,
                fallback_text=self._fallback_text,
            )
            self._error = None
            self._set_messages((*self._messages, Message.user(query)))
            request = self._build_request(query)

            self._active = session
            self._active_task = asyncio.create_task(self._run(session, request))
            task = self._active_task

        return await task

    async def stop(self) -> SessionResult | None:
        """Stop the active reply, if any, and wait for it to settle."""
        if self._active is None:
            return None
        return await self._stop_active()

    @log_operation("conversation_reset")
    async def reset(self) -> None:
        """Stop streaming, clear the list and start a new conversation id."""
        async with self._send_lock:
            if self._active is not None:
                await self._stop_active()
            self._active = None
            self._active_task = None
            self._error = None
            self._conversation_id = uuid.uuid4().hex
            self._set_messages(
                (Message.assistant(self._reset_greeting),)
                if self._reset_greeting
                else ()
            )

    # ------------------------------------------------------------------ #
    # Internals                                                           #
    # ------------------------------------------------------------------ #

    def _build_request(self, query: str) -> StreamRequest:
        if self.mode is StreamMode.NDJSON:
            return build_query_request(self.endpoint, query, self._conversation_id)
        return build_messages_request(self.endpoint, self._messages)

    async def _run(
        self, session: StreamSession, request: StreamRequest
    ) -> SessionResult:
        deadline_handle = None
        if self._deadline_seconds:
            deadline_handle = asyncio.get_running_loop().call_later(
                self._deadline_seconds, self._on_deadline, session
            )

        async with operation_context(
            "conversation_send",
            context={
                "conversation_id": self._conversation_id,
                "session_id": session.id,
            },
        ):
            try:
                return await session.start(request)
            except TransportError as e:
                self._error = e
                logger.warning(
                    "Reply failed",
                    session_id=session.id,
                    error_category=e.category,
                    status_code=e.status_code,
                )
                return session.result
            finally:
                if deadline_handle is not None:
                    deadline_handle.cancel()

    async def _stop_active(self) -> SessionResult:
        session, task = self._active, self._active_task
        session.stop()
        if task is not None:
            # wait() does not re-raise the task's outcome
            await asyncio.wait({task})
        return await session.wait_closed()

    def _on_deadline(self, session: StreamSession) -> None:
        logger.info(
            "Stream deadline reached",
            session_id=session.id,
            deadline_seconds=self._deadline_seconds,
        )
        session.stop()

    def _apply_patch(self, patch: Patch) -> None:
        if self._active is None or patch.session_id != self._active.id:
            logger.debug(
                "Dropping patch from inactive session",
                session_id=patch.session_id,
                kind=patch.kind.value,
            )
            return
        self._set_messages(apply_patch(self._messages, patch))

    def _set_messages(self, messages: tuple[Message, ...]) -> None:
        self._messages = messages
        for listener in list(self._listeners):
            try:
                listener(messages)
            except Exception:
                logger.exception("Snapshot listener failed")
