"""
Reconstruction of streamed chat answers.

The chat backend streams SSE-style text: ``data: <JSON>`` lines carrying
``start`` / ``content`` / ``complete`` / ``error`` events, possibly mixed
with plain text lines. The transport may cut the bytes anywhere, including
inside a multi-byte character or in the middle of a line. StreamReconstructor
buffers partial lines so event boundaries never depend on chunking, keeps
the accumulated answer, and delivers exactly one terminal outcome.

Events are modelled as a closed set of dataclasses; `_dispatch` is the only
place that branches on the event kind.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Optional, Union

from contextual_chat.chat.base import source_attributions
from contextual_chat.chat.registry import CancellationHandle, iterate_until_cancelled

logger = logging.getLogger("quart.app")

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
SSE_FIELD_PREFIXES = ("event:", "id:", "retry:")


class StreamState(Enum):
    AWAITING_BUFFER = "awaiting_buffer"
    BUFFERING_LINE = "buffering_line"
    DISPATCHING_EVENT = "dispatching_event"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (StreamState.COMPLETE, StreamState.FAILED, StreamState.CANCELLED)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StartEvent:
    conversation_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "start", "conversationId": self.conversation_id}


@dataclass(frozen=True)
class ContentEvent:
    delta: str
    accumulated: str = ""
    raw: bool = False
    """True when the delta came from a line that was not a structured event."""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "content", "content": self.delta, "accumulatedContent": self.accumulated}


@dataclass(frozen=True)
class CompleteEvent:
    messages: Optional[List[Dict[str, Any]]]
    conversation_id: Optional[str] = None
    interaction_id: Optional[str] = None
    accumulated: str = ""
    synthesized: bool = False
    """True when built from accumulated text because the stream closed without `complete`."""
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "complete",
            "messages": self.messages or [],
            "conversationId": self.conversation_id,
            "interactionId": self.interaction_id,
            "accumulatedContent": self.accumulated,
        }


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    conversation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "error", "error": self.error, "conversationId": self.conversation_id}


@dataclass(frozen=True)
class RawText:
    """A line that is not a structured event; dispatched as content."""
    text: str


StreamEvent = Union[StartEvent, ContentEvent, CompleteEvent, ErrorEvent]
ParsedLine = Union[StartEvent, ContentEvent, CompleteEvent, ErrorEvent, RawText]


def format_sse(data: Dict[str, Any], event: Optional[str] = None) -> str:
    msg = f"data: {json.dumps(data)}\n"
    if event is not None:
        msg += f"event: {event}\n"
    return f"{msg}\n"


# ---------------------------------------------------------------------------
# Line parsing
# ---------------------------------------------------------------------------

def parse_line(line: str) -> Optional[ParsedLine]:
    """
    Decode one wire line. Returns None for lines that carry nothing
    (blank lines, SSE comments and fields, the [DONE] sentinel, unknown event types).
    """
    line = line.rstrip("\r")
    if not line.strip():
        return None
    if line.startswith(":"):
        return None

    if line.startswith(DATA_PREFIX):
        data = line[len(DATA_PREFIX):]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            return None
        try:
            payload = json.loads(data)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return RawText(data) if data.strip() else None
        return _event_from_payload(payload)

    if line.startswith(SSE_FIELD_PREFIXES):
        return None
    return RawText(line + "\n")


def _event_from_payload(payload: Dict[str, Any]) -> Optional[ParsedLine]:
    event_type = payload.get("type")
    conversation_id = payload.get("conversationId") or payload.get("session_id")

    if event_type == "start":
        return StartEvent(conversation_id=conversation_id, payload=payload)
    if event_type == "content":
        content = payload.get("content")
        return ContentEvent(delta="" if content is None else str(content))
    if event_type == "complete":
        messages = payload.get("messages")
        return CompleteEvent(
            messages=list(messages) if isinstance(messages, list) else None,
            conversation_id=conversation_id,
            interaction_id=payload.get("interactionId"),
            payload=payload,
        )
    if event_type == "error":
        return ErrorEvent(error=str(payload.get("error") or "Unknown streaming error"), conversation_id=conversation_id)

    logger.debug(f"Ignoring stream event of unknown type: {event_type!r}")
    return None


# ---------------------------------------------------------------------------
# Reconstructor
# ---------------------------------------------------------------------------

class StreamReconstructor:
    """
    Incremental state machine over a chunked wire stream.

    Usage::

        reconstructor = StreamReconstructor(conversation_id, on_content=print)
        for chunk in chunks:
            events = reconstructor.feed(chunk)
        events += reconstructor.finish()
        outcome = reconstructor.result   # CompleteEvent, ErrorEvent or None
    """

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        on_content: Optional[Callable[[str], None]] = None,
    ):
        self.conversation_id = conversation_id
        self.on_content = on_content
        self.state = StreamState.AWAITING_BUFFER
        self.interrupted: Optional[BaseException] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._accumulated = ""
        self._result: Optional[Union[CompleteEvent, ErrorEvent]] = None

    @property
    def accumulated(self) -> str:
        return self._accumulated

    @property
    def result(self) -> Optional[Union[CompleteEvent, ErrorEvent]]:
        """The terminal event, or None while running / when the stream produced nothing."""
        return self._result

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """Consume one transport chunk and return the events it completed, in order."""
        if self.is_terminal:
            return []
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        self.state = StreamState.BUFFERING_LINE
        events = self._process_lines(lines)
        if not self.is_terminal:
            self.state = StreamState.BUFFERING_LINE if self._buffer else StreamState.AWAITING_BUFFER
        return events

    def finish(self) -> List[StreamEvent]:
        """
        Signal that the transport closed. Flushes the trailing partial line and,
        if no terminal event arrived, synthesizes a completion from the
        accumulated text. Nothing is synthesized from an empty accumulator.
        """
        if self.is_terminal:
            return []
        remaining = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events = self._process_lines([remaining]) if remaining else []
        if self.is_terminal:
            return events

        if self._accumulated:
            logger.info(
                f"Stream for conversation {self.conversation_id} closed without a completion; "
                f"using {len(self._accumulated)} accumulated characters as the answer."
            )
            self._result = CompleteEvent(
                messages=[{"type": "output", "contentType": "text", "content": self._accumulated}],
                conversation_id=self.conversation_id,
                accumulated=self._accumulated,
                synthesized=True,
            )
            self.state = StreamState.COMPLETE
            events.append(self._result)
        else:
            logger.warning(f"Stream for conversation {self.conversation_id} closed without any content.")
            self.state = StreamState.AWAITING_BUFFER
        return events

    def cancel(self) -> None:
        if not self.is_terminal:
            self.state = StreamState.CANCELLED

    async def reconstruct(
        self,
        chunks: AsyncIterable[Union[bytes, str]],
        on_content: Optional[Callable[[str], None]] = None,
        handle: Optional[CancellationHandle] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Drive the state machine from an async chunk source, yielding events as
        they complete. Once `handle` is cancelled no further chunk is read and
        no further event is yielded; a read already waiting on the transport
        is abandoned. A transport error while reading counts as the stream
        closing.
        """
        if on_content is not None:
            self.on_content = on_content
        source = chunks if handle is None else iterate_until_cancelled(chunks, handle)
        iterator = source.__aiter__()
        try:
            while not self.is_terminal:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    logger.warning(f"Stream for conversation {self.conversation_id} interrupted: {e}")
                    self.interrupted = e
                    break
                for event in self.feed(chunk):
                    if handle is not None and handle.cancelled:
                        break
                    yield event

            if handle is not None and handle.cancelled:
                self.cancel()
                return
            for event in self.finish():
                yield event
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _process_lines(self, lines: List[str]) -> List[StreamEvent]:
        events = []
        for line in lines:
            if self.is_terminal:
                break
            parsed = parse_line(line)
            if parsed is None:
                continue
            self.state = StreamState.DISPATCHING_EVENT
            event = self._dispatch(parsed)
            if event is not None:
                events.append(event)
        return events

    def _dispatch(self, parsed: ParsedLine) -> Optional[StreamEvent]:
        if isinstance(parsed, StartEvent):
            if parsed.conversation_id and not self.conversation_id:
                self.conversation_id = parsed.conversation_id
            return replace(parsed, conversation_id=parsed.conversation_id or self.conversation_id)

        if isinstance(parsed, (ContentEvent, RawText)):
            is_raw = isinstance(parsed, RawText)
            delta = parsed.text if is_raw else parsed.delta
            if not delta:
                return None
            self._accumulated += delta
            if self.on_content is not None:
                self.on_content(delta)
            return ContentEvent(delta=delta, accumulated=self._accumulated, raw=is_raw)

        if isinstance(parsed, CompleteEvent):
            self._result = self._normalize_complete(parsed)
            self.state = StreamState.COMPLETE
            return self._result

        if isinstance(parsed, ErrorEvent):
            # An explicit error wins over anything accumulated so far.
            self._result = replace(parsed, conversation_id=parsed.conversation_id or self.conversation_id)
            self.state = StreamState.FAILED
            return self._result

        raise TypeError(f"Unhandled stream event: {parsed!r}")

    def _normalize_complete(self, event: CompleteEvent) -> CompleteEvent:
        payload = event.payload
        conversation_id = event.conversation_id or self.conversation_id
        attributions = source_attributions(payload.get("sources"))

        if event.messages is None:
            # Backends that answer with {"response": ...} instead of a message list.
            content = payload.get("response") or self._accumulated
            output = {"type": "output", "contentType": "markdown", "content": content}
            if attributions:
                output["sourceAttributions"] = attributions
            messages = [output]
            if payload.get("query"):
                messages.insert(0, {"type": "input", "contentType": "text", "content": payload["query"]})
        else:
            messages = list(event.messages)
            if attributions and messages and isinstance(messages[-1], dict) \
                    and messages[-1].get("type") == "output" and "sourceAttributions" not in messages[-1]:
                messages[-1] = {**messages[-1], "sourceAttributions": attributions}

        return replace(
            event,
            messages=messages,
            conversation_id=conversation_id,
            accumulated=self._accumulated,
        )
