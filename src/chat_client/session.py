"""Conversation session manager.

Owns the live transcript of one conversation, decides what is forwarded to
the model, applies edits, regenerates replies and folds streamed output back
into the transcript. Runs on a single event loop; at most one inference
request is in flight per session, enforced by the state machine.

Typical usage
-------------
session = SessionManager(inference, store=store, attachments=uploads)
reply = await session.submit("hello")

or, to observe progress:

async for event in session.stream_submit("hello"):
    print(event.kind, event.delta)
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from .attachments import Attachment, AttachmentService
from .config import STALE_REPLY_POLICIES
from .errors import (
    ConfigError,
    InferenceError,
    InvalidTransition,
    MessageNotFoundError,
    NotEditableError,
    SessionBusyError,
    SessionClosedError,
    UploadError,
    ValidationError,
)
from .inference import InferenceStream
from .messages import Message, Role, pending_assistant, to_model_messages, user_message
from .store import TranscriptStore
from .window import DEFAULT_WINDOW, window_messages

logger = logging.getLogger(__name__)


# -----------------------------
# State machine
# -----------------------------
class SessionState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    SETTLED = "settled"
    FAILED = "failed"


class Trigger(str, Enum):
    START = "start"
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"
    RESET = "reset"


_TRANSITIONS: Dict[Tuple[SessionState, Trigger], SessionState] = {
    (SessionState.IDLE, Trigger.START): SessionState.REQUESTING,
    (SessionState.REQUESTING, Trigger.DELTA): SessionState.STREAMING,
    (SessionState.STREAMING, Trigger.DELTA): SessionState.STREAMING,
    (SessionState.STREAMING, Trigger.DONE): SessionState.SETTLED,
    (SessionState.REQUESTING, Trigger.ERROR): SessionState.FAILED,
    (SessionState.STREAMING, Trigger.ERROR): SessionState.FAILED,
    (SessionState.SETTLED, Trigger.RESET): SessionState.IDLE,
    (SessionState.FAILED, Trigger.RESET): SessionState.IDLE,
}


def next_state(state: SessionState, trigger: Trigger) -> SessionState:
    try:
        return _TRANSITIONS[(state, trigger)]
    except KeyError:
        raise InvalidTransition(f"no transition from {state.value!r} on {trigger.value!r}") from None


class CancellationToken:
    """Cancels one inference request; once set it stays set."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class SessionEvent:
    """Progress notification: ``user_message``, ``edited``, ``state``,
    ``delta``, ``settled`` or ``failed``."""

    kind: str
    state: SessionState
    message: Optional[Message] = None
    delta: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.kind, "state": self.state.value}
        if self.message is not None:
            d["message"] = self.message.to_dict()
        if self.delta is not None:
            d["delta"] = self.delta
        if self.error is not None:
            d["error"] = self.error
        return d


Listener = Callable[[SessionEvent], None]

_END = object()
_CANCELLED = object()


async def _next_delta(iterator: AsyncIterator[str], cancelled: "asyncio.Future[Any]") -> Any:
    """Await the next delta, ``_END`` at exhaustion, or ``_CANCELLED``."""
    nxt = asyncio.ensure_future(iterator.__anext__())
    try:
        await asyncio.wait({nxt, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        nxt.cancel()
        raise
    if not nxt.done():
        # Let the stream unwind before it is closed.
        nxt.cancel()
        try:
            await nxt
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        return _CANCELLED
    try:
        return nxt.result()
    except StopAsyncIteration:
        return _END


async def _aclose(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as e:
        # A read is still unwinding after cancellation; the loop finalizes it.
        logger.warning("Could not close inference stream: %s", e)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Session manager
# -----------------------------
class SessionManager:
    """One live conversation.

    Parameters
    ----------
    inference : InferenceStream
        Backend producing streamed replies.
    store : TranscriptStore | None
        Durable log; user messages are written to it once, at creation.
    attachments : AttachmentService | None
        Upload service for image attachments.
    window_size : int
        Maximum number of messages forwarded per request.
    stale_reply_policy : str
        ``"replace"`` drops the superseded assistant reply once a regenerated
        one settles; ``"retain"`` keeps both.
    """

    def __init__(
        self,
        inference: InferenceStream,
        *,
        store: Optional[TranscriptStore] = None,
        attachments: Optional[AttachmentService] = None,
        window_size: int = DEFAULT_WINDOW,
        stale_reply_policy: str = "replace",
        session_id: Optional[str] = None,
    ) -> None:
        if window_size <= 0:
            raise ConfigError(f"window size must be positive, got {window_size}")
        if stale_reply_policy not in STALE_REPLY_POLICIES:
            raise ConfigError(f"unknown stale reply policy: {stale_reply_policy!r}")
        self.id = session_id or uuid.uuid4().hex
        self.window_size = window_size
        self.stale_reply_policy = stale_reply_policy
        self.last_error: Optional[InferenceError] = None

        self._inference = inference
        self._store = store
        self._attachments = attachments
        self._transcript: List[Message] = []
        self._state = SessionState.IDLE
        self._seq = 0
        self._token: Optional[CancellationToken] = None
        self._pending_writes: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        self._closed = False

    # --------- views ----------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is not SessionState.IDLE

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def transcript(self) -> Tuple[Message, ...]:
        return tuple(m.copy() for m in self._transcript)

    def get(self, message_id: str) -> Message:
        return self._transcript[self._index_of(message_id)].copy()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for every event; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "state": self._state.value,
            "messages": [m.to_dict() for m in self._transcript],
            "last_error": str(self.last_error) if self.last_error else None,
        }

    # --------- internals ----------
    def _publish(self, event: SessionEvent) -> SessionEvent:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session %s: listener failed on %s event", self.id, event.kind)
        return event

    def _fire(self, trigger: Trigger) -> None:
        new = next_state(self._state, trigger)
        if new is not self._state:
            self._state = new
            self._publish(SessionEvent("state", new))

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError(f"Session {self.id} is closed")

    def _check_idle(self) -> None:
        if self._state is not SessionState.IDLE:
            raise SessionBusyError("A response is still streaming; wait for it to finish")

    def _index_of(self, message_id: str) -> int:
        for i, m in enumerate(self._transcript):
            if m.id == message_id:
                return i
        raise MessageNotFoundError(f"No message with id {message_id!r}")

    def _append(self, message: Message) -> None:
        if any(m.id == message.id for m in self._transcript):
            raise ValidationError(f"Duplicate message id {message.id!r}")
        self._seq += 1
        message.seq = self._seq
        self._transcript.append(message)

    def _window(self, upto: Optional[int] = None) -> List[Message]:
        source = self._transcript if upto is None else self._transcript[:upto]
        return window_messages(source, self.window_size)

    # --------- persistence ----------
    def _persist_later(self, message: Message) -> None:
        if self._store is None or message.role is not Role.USER:
            return
        task = asyncio.get_running_loop().create_task(self._persist(message.to_record()))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist(self, record: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._store.append, record)
        except Exception as e:
            # Durability is best effort; the transcript is already updated.
            logger.warning("Session %s: failed to persist message %s: %s", self.id, record.get("id"), e)

    async def flush(self) -> None:
        """Wait for outstanding persistence writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    # --------- submission ----------
    def _begin_submit(self, text: str, image_url: Optional[str]) -> Tuple[List[Message], SessionEvent]:
        self._check_open()
        self._check_idle()
        message = user_message(text, image_url)
        if message.is_empty:
            raise ValidationError("Message cannot be empty.")
        self._fire(Trigger.START)
        self._append(message)
        self._persist_later(message)
        event = self._publish(SessionEvent("user_message", self._state, message=message.copy()))
        return self._window(), event

    async def stream_submit(self, text: str = "", image_url: Optional[str] = None) -> AsyncIterator[SessionEvent]:
        """Submit a user message and stream the reply as events.

        Validation runs when the first event is requested: an empty message,
        a busy or closed session raise before anything is appended.
        """
        request, lead = self._begin_submit(text, image_url)
        async with aclosing(self._reconcile(request, stale_ids=(), lead=(lead,))) as events:
            async for event in events:
                yield event

    async def submit(self, text: str = "", image_url: Optional[str] = None) -> Message:
        """Submit a user message; returns the settled assistant reply."""
        return await _final_reply(self.stream_submit(text, image_url))

    async def upload(self, data: bytes, content_type: str = "application/octet-stream") -> Attachment:
        self._check_open()
        if self._attachments is None:
            raise UploadError("No attachment service configured")
        return await self._attachments.upload(data, content_type)

    async def submit_attachment(
        self,
        data: bytes,
        content_type: str = "application/octet-stream",
        text: str = "",
    ) -> Message:
        """Upload an image, then submit a user message referencing it.

        A failed upload raises :class:`UploadError` and leaves the transcript
        untouched.
        """
        attachment = await self.upload(data, content_type)
        return await self.submit(text, image_url=attachment.url)

    # --------- edit & regenerate ----------
    def _apply_edit(self, message_id: str, new_text: str) -> Optional[Message]:
        self._check_open()
        self._check_idle()
        index = self._index_of(message_id)
        message = self._transcript[index]
        if message.role is not Role.USER:
            raise NotEditableError("Only user messages can be edited")
        # Regeneration answers the latest turn, so only that turn is editable.
        if any(m.role is Role.USER for m in self._transcript[index + 1:]):
            raise NotEditableError("Only the most recent user message can be edited")
        text = (new_text or "").strip()
        if not text:
            return None
        message.parts = message.with_text(text)
        return message

    def _begin_regenerate(self) -> Tuple[List[Message], Tuple[str, ...]]:
        self._check_open()
        self._check_idle()
        last_user = None
        for i in range(len(self._transcript) - 1, -1, -1):
            if self._transcript[i].role is Role.USER:
                last_user = i
                break
        if last_user is None:
            raise ValidationError("Nothing to regenerate: no user message in transcript")
        # Replies after the last user message are stale and never re-sent.
        stale = tuple(m.id for m in self._transcript[last_user + 1:])
        request = self._window(last_user + 1)
        self._fire(Trigger.START)
        return request, stale

    async def stream_regenerate(self) -> AsyncIterator[SessionEvent]:
        request, stale = self._begin_regenerate()
        async with aclosing(self._reconcile(request, stale_ids=stale)) as events:
            async for event in events:
                yield event

    async def regenerate(self) -> Message:
        """Request a fresh reply to the last user message."""
        return await _final_reply(self.stream_regenerate())

    async def stream_edit(self, message_id: str, new_text: str) -> AsyncIterator[SessionEvent]:
        """Edit a user message in place and stream the regenerated reply.

        Blank text is a no-op: nothing changes and no events are produced.
        Edits are not persisted.
        """
        edited = self._apply_edit(message_id, new_text)
        if edited is None:
            return
        request, stale = self._begin_regenerate()
        lead = self._publish(SessionEvent("edited", self._state, message=edited.copy()))
        async with aclosing(self._reconcile(request, stale_ids=stale, lead=(lead,))) as events:
            async for event in events:
                yield event

    async def edit(self, message_id: str, new_text: str) -> Optional[Message]:
        """Edit and regenerate; returns the new reply, or ``None`` for a blank edit."""
        reply: Optional[Message] = None
        async with aclosing(self.stream_edit(message_id, new_text)) as events:
            async for event in events:
                if event.kind == "settled":
                    reply = event.message
        return reply

    # --------- streaming reconciliation ----------
    async def _reconcile(
        self,
        request: Sequence[Message],
        *,
        stale_ids: Sequence[str],
        lead: Sequence[SessionEvent] = (),
    ) -> AsyncIterator[SessionEvent]:
        token = CancellationToken()
        self._token = token
        pending = pending_assistant()
        appended = False
        finished = False
        failure: Optional[InferenceError] = None
        stream: Any = None
        waiter = asyncio.ensure_future(token.wait())
        try:
            for event in lead:
                yield event
            stream = self._inference.stream(to_model_messages(request))
            iterator = stream.__aiter__()
            while True:
                delta = await _next_delta(iterator, waiter)
                if delta is _END or delta is _CANCELLED or token.cancelled:
                    break
                if not delta:
                    continue
                if not appended:
                    self._append(pending)
                    appended = True
                pending.append_text(delta)
                self._fire(Trigger.DELTA)
                yield self._publish(SessionEvent("delta", self._state, message=pending.copy(), delta=delta))
            await _aclose(stream)
            if token.cancelled:
                raise InferenceError("Request cancelled")
            if pending.is_empty:
                raise InferenceError("Model returned an empty response")
            finished = True
        except InferenceError as e:
            failure = e
        except Exception as e:
            # Backend defects are reported like any other stream failure.
            logger.exception("Session %s: inference backend raised", self.id)
            failure = InferenceError(f"Inference failed: {e}")
        finally:
            waiter.cancel()
            if self._token is token:
                self._token = None
            if not finished and failure is None:
                # The consumer abandoned the stream; nothing may be yielded here.
                token.cancel()
                if stream is not None:
                    await _aclose(stream)
                self._finish_failed(pending, appended, InferenceError("Request abandoned"))

        if failure is not None:
            yield self._finish_failed(pending, appended, failure)
            raise failure
        yield self._finish_settled(pending, stale_ids)

    def _finish_settled(self, pending: Message, stale_ids: Sequence[str]) -> SessionEvent:
        self._fire(Trigger.DONE)
        pending.created_at = _utcnow()
        if stale_ids and self.stale_reply_policy == "replace":
            stale = set(stale_ids)
            self._transcript = [m for m in self._transcript if m.id not in stale]
        self.last_error = None
        event = self._publish(SessionEvent("settled", self._state, message=pending.copy()))
        self._fire(Trigger.RESET)
        return event

    def _finish_failed(self, pending: Message, appended: bool, error: InferenceError) -> SessionEvent:
        # A pending reply only enters the transcript with its first non-empty
        # delta, so an empty reply is never left behind; partial output stays.
        logger.warning("Session %s: inference failed: %s", self.id, error)
        self.last_error = error
        self._fire(Trigger.ERROR)
        event = self._publish(
            SessionEvent(
                "failed",
                self._state,
                message=pending.copy() if appended else None,
                error=str(error),
            )
        )
        self._fire(Trigger.RESET)
        return event

    # --------- lifecycle ----------
    def cancel(self) -> bool:
        """Cancel the in-flight request, if any. Returns True if one was cancelled."""
        if self._token is None or self._token.cancelled:
            return False
        self._token.cancel()
        return True

    async def load_history(self, limit: int = 50) -> int:
        """Replace the transcript with the most recent persisted messages."""
        self._check_open()
        self._check_idle()
        if self._store is None:
            return 0
        records = await asyncio.to_thread(self._store.list_recent, limit)
        # The store answers newest-first; the transcript runs oldest-first.
        messages: List[Message] = []
        seen = set()
        for record in reversed(records):
            try:
                message = Message.from_record(record)
            except (ValueError, TypeError) as e:
                logger.warning("Session %s: skipping unreadable record %r: %s", self.id, record.get("id"), e)
                continue
            if message.id in seen:
                logger.warning("Session %s: skipping duplicate record %s", self.id, message.id)
                continue
            seen.add(message.id)
            messages.append(message)
        self._check_idle()
        self._transcript = []
        self._seq = 0
        for m in messages:
            self._append(m)
        return len(messages)

    async def aclose(self) -> None:
        """Cancel any in-flight request, flush writes and refuse further use."""
        if self._closed:
            return
        self._closed = True
        self.cancel()
        await self.flush()
        self._listeners.clear()


async def _final_reply(events: AsyncIterator[SessionEvent]) -> Message:
    reply: Optional[Message] = None
    async with aclosing(events) as stream:
        async for event in stream:
            if event.kind == "settled":
                reply = event.message
    if reply is None:
        raise InferenceError("Stream finished without a reply")
    return reply
