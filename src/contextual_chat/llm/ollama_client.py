"""
Chat transport for a local Ollama server.

Ollama streams newline-delimited JSON objects; they are re-encoded into the
``data: <json>`` event lines every other part of the pipeline understands.
"""

from __future__ import annotations

import functools
import json
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from contextual_chat.chat.base import (
    ChatResult,
    ChatService,
    ContentCallback,
    ensure_conversation_id,
    latest_user_input,
    make_interaction_id,
    output_message,
)
from contextual_chat.chat.registry import CancellationHandle, CancellationRegistry, iterate_until_cancelled
from contextual_chat.core.config import OllamaConfig
from contextual_chat.core.exceptions import ChatTransportError, RequestCancelledError
from contextual_chat.core.models import Snapshot
from .stream import format_sse

logger = logging.getLogger("quart.app")

ROLE_BY_TYPE = {"input": "user", "output": "assistant"}


def _normalize_host(host: str) -> str:
    if not host.startswith("http://") and not host.startswith("https://"):
        normalized = f"http://{host}"
        logger.info(f"Ollama host missing protocol. Automatically prepending 'http://'. New host: {normalized}")
        return normalized
    return host


class OllamaChatService(ChatService):
    """Base transport streaming from Ollama's ``/api/chat``."""

    def __init__(self, config: OllamaConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.host = _normalize_host(config.host)
        self.client = client or httpx.AsyncClient(base_url=self.host, timeout=config.timeout_s)
        self._registry = CancellationRegistry()
        # Last request per conversation, kept only for regenerate. Lost on restart;
        # least recently used conversations are evicted beyond max_conversations.
        self._histories: "OrderedDict[str, List[Dict[str, str]]]" = OrderedDict()

    async def send(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
        on_content: Optional[ContentCallback] = None,
    ) -> ChatResult:
        if not latest_user_input(messages):
            raise ValueError("Input content is required and cannot be empty")
        conversation_id = ensure_conversation_id(conversation_id)
        history = _to_ollama_messages(messages)
        self._remember(conversation_id, history)
        return await self._chat(conversation_id, history)

    async def regenerate(
        self,
        conversation_id: str,
        interaction_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
    ) -> ChatResult:
        history = self._histories.get(conversation_id)
        if not history:
            raise ValueError(f"No conversation history to regenerate for {conversation_id}")
        # Drop the previous answer so the model answers the last user turn again.
        while history and history[-1]["role"] == "assistant":
            history = history[:-1]
        logger.info(f"Regenerating response for conversation: {conversation_id}")
        return await self._chat(conversation_id, history)

    async def abort(self, conversation_id: str) -> bool:
        self._histories.pop(conversation_id, None)
        return await self._registry.abort(conversation_id)

    async def list_models(self) -> List[Dict[str, Any]]:
        try:
            response = await self.client.get("/api/tags")
            response.raise_for_status()
            return response.json().get("models", [])
        except httpx.RequestError as e:
            logger.error(f"Ollama API request error: {e}")
            raise ChatTransportError("Could not connect to Ollama server.", original_error=e) from e

    async def health_check(self) -> Dict[str, Any]:
        try:
            models = await self.list_models()
        except (ChatTransportError, httpx.HTTPStatusError) as e:
            return {"status": "unhealthy", "details": {"error": str(e)}}
        names = [m.get("name") for m in models]
        return {
            "status": "healthy",
            "details": {"model": self.config.model, "modelAvailable": self.config.model in names},
        }

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------

    async def _chat(self, conversation_id: str, history: List[Dict[str, str]]) -> ChatResult:
        payload = {
            "model": self.config.model,
            "messages": [{"role": "system", "content": self.config.system_prompt}] + history,
            "stream": True,
        }
        handle = await self._registry.register(conversation_id)
        request = self.client.build_request("POST", "/api/chat", json=payload)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.RequestError as e:
            await self._registry.release(handle)
            logger.error(f"Ollama API request error: {e}")
            raise ChatTransportError("Error during chat completion with Ollama.", original_error=e) from e

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            await self._registry.release(handle)
            raise ChatTransportError(
                f"Ollama API error: {response.status_code} - {body}",
                status_code=response.status_code,
                body=body,
            )
        if handle.cancelled:
            await response.aclose()
            await self._registry.release(handle)
            raise RequestCancelledError(f"Request for conversation {conversation_id} was aborted.")

        return ChatResult(
            messages=[],
            conversation_id=conversation_id,
            interaction_id=make_interaction_id(conversation_id),
            stream=self._sse_chunks(response, handle, history),
            on_close=functools.partial(self._close_stream, response, handle),
        )

    def _remember(self, conversation_id: str, history: List[Dict[str, str]]) -> None:
        self._histories[conversation_id] = history
        self._histories.move_to_end(conversation_id)
        while len(self._histories) > max(1, self.config.max_conversations):
            evicted, _ = self._histories.popitem(last=False)
            logger.debug(f"Evicted Ollama history for conversation {evicted}.")

    async def _close_stream(self, response: httpx.Response, handle: CancellationHandle) -> None:
        try:
            await response.aclose()
        finally:
            await self._registry.release(handle)

    async def _sse_chunks(
        self,
        response: httpx.Response,
        handle: CancellationHandle,
        history: List[Dict[str, str]],
    ) -> AsyncIterator[bytes]:
        conversation_id = handle.conversation_id
        answer: List[str] = []
        try:
            yield format_sse({"type": "start", "conversationId": conversation_id}).encode("utf-8")
            async for line in iterate_until_cancelled(response.aiter_lines(), handle):
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except ValueError:
                    data = None
                if not isinstance(data, dict):
                    yield f"{line}\n".encode("utf-8")
                    continue

                if data.get("error"):
                    yield format_sse({
                        "type": "error",
                        "error": str(data["error"]),
                        "conversationId": conversation_id,
                    }).encode("utf-8")
                    return

                content = (data.get("message") or {}).get("content") or ""
                if content:
                    answer.append(content)
                    yield format_sse({"type": "content", "content": content}).encode("utf-8")

                if data.get("done"):
                    text = "".join(answer)
                    self._remember(conversation_id, history + [{"role": "assistant", "content": text}])
                    yield format_sse({
                        "type": "complete",
                        "messages": [output_message(text, conversation_id)],
                        "conversationId": conversation_id,
                        "interactionId": make_interaction_id(conversation_id),
                    }).encode("utf-8")
                    return
        finally:
            await self._close_stream(response, handle)


def _to_ollama_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    converted = []
    for message in messages:
        role = ROLE_BY_TYPE.get(message.get("type"))
        content = message.get("content")
        if role is None or not content:
            continue
        converted.append({"role": role, "content": str(content)})
    return converted
