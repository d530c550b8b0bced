"""
Chat service interface shared by base transports and the resilient wrapper.

Callers depend only on ChatService. A base transport's ChatResult.stream
yields raw wire chunks (bytes, already SSE-framed); ResilientChatService
yields reconstructed StreamEvent objects. Both can be forwarded to an SSE
client as-is.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from contextual_chat.core.models import Snapshot

logger = logging.getLogger("quart.app")

ContentCallback = Callable[[str], None]


@dataclass
class ChatResult:
    """Answer to a send/regenerate call."""

    messages: List[Dict[str, Any]]
    conversation_id: str
    interaction_id: str
    stream: Optional[AsyncIterator[Any]] = None
    """Set for streaming answers; `messages` is empty until the stream completes."""

    metadata: Dict[str, Any] = field(default_factory=dict)
    on_close: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False, compare=False)
    """Releases what the stream holds (connection, cancellation handle); run once by `aclose`."""

    @property
    def is_stream(self) -> bool:
        return self.stream is not None

    async def aclose(self) -> None:
        """
        Close the stream and release its resources, whether or not it was ever
        iterated. Safe to call more than once.
        """
        try:
            aclose = getattr(self.stream, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            on_close, self.on_close = self.on_close, None
            if on_close is not None:
                await on_close()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": self.messages,
            "conversationId": self.conversation_id,
            "interactionId": self.interaction_id,
        }


class ChatService(ABC):
    """Capability interface: send, regenerate, abort."""

    @abstractmethod
    async def send(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
        on_content: Optional[ContentCallback] = None,
    ) -> ChatResult:
        """Send the conversation so far; the last message is the new user input."""

    @abstractmethod
    async def regenerate(
        self,
        conversation_id: str,
        interaction_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
    ) -> ChatResult:
        """Ask the backend for a new answer to the last user message."""

    @abstractmethod
    async def abort(self, conversation_id: str) -> bool:
        """Cancel the in-flight request for `conversation_id`. Returns False if none was running."""

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "unknown"}

    async def close(self) -> None:
        pass


def ensure_conversation_id(conversation_id: Optional[str]) -> str:
    """Return `conversation_id` if it is a UUID, otherwise a freshly generated one."""
    if not conversation_id:
        return str(uuid.uuid4())
    try:
        uuid.UUID(conversation_id)
        return conversation_id
    except (ValueError, AttributeError, TypeError):
        new_id = str(uuid.uuid4())
        logger.warning(f"Invalid conversation id format '{conversation_id}', using new id {new_id}.")
        return new_id


def make_interaction_id(conversation_id: str) -> str:
    return f"{conversation_id}-{int(datetime.now(timezone.utc).timestamp() * 1000)}"


def latest_user_input(messages: List[Dict[str, Any]]) -> str:
    for message in reversed(messages or []):
        if message.get("type") == "input":
            return (message.get("content") or "").strip()
    return ""


def source_attributions(sources: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    """Map backend `sources` entries to the message model's sourceAttributions."""
    attributions = []
    for source in sources or []:
        if not isinstance(source, dict):
            continue
        attributions.append({
            "title": f"Document {source.get('document_id', '')}",
            "url": f"#/discover?_a=(index:'{source.get('index', '')}')",
            "body": f"Score: {source.get('score')}, Timestamp: {source.get('timestamp')}",
        })
    return attributions


def output_message(content: str, conversation_id: str, sources=None, content_type: str = "markdown") -> Dict[str, Any]:
    message = {
        "type": "output",
        "contentType": content_type,
        "content": content,
        "interactionId": make_interaction_id(conversation_id),
        "traceId": make_interaction_id(conversation_id),
        "createTime": datetime.now(timezone.utc).isoformat(),
    }
    attributions = source_attributions(sources)
    if attributions:
        message["sourceAttributions"] = attributions
    return message
