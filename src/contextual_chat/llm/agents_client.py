"""
Chat transport for an OpenSearch-Agents style backend.

Streaming is attempted first against the stream endpoint; when the backend
answers with plain JSON or the stream cannot be opened, the request is
repeated against the regular chat endpoint, which is retried with
exponential backoff on transient failures.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import random
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional

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
from contextual_chat.core.config import AgentConfig, ContextualChatConfig
from contextual_chat.core.exceptions import ChatTransportError, RequestCancelledError
from contextual_chat.core.models import Snapshot

logger = logging.getLogger("quart.app")

REGENERATE_QUERY = "Please regenerate the last response"
REQUEST_SOURCE = "contextual-chat-assistant"
HEALTH_TIMEOUT_S = 5.0


class AgentsChatService(ChatService):
    """Base transport talking to ``/api/v1/chat/stream`` and ``/api/v1/chat``."""

    def __init__(
        self,
        config: AgentConfig,
        chat_config: Optional[ContextualChatConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        chat_config = chat_config or ContextualChatConfig()
        self.config = config
        self.max_retry_attempts = max(0, chat_config.max_retry_attempts)
        self.retry_backoff_s = chat_config.retry_backoff_s
        self.client = client or httpx.AsyncClient(base_url=config.base_url, timeout=config.timeout_s)
        self._registry = CancellationRegistry()

    async def send(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
        on_content: Optional[ContentCallback] = None,
    ) -> ChatResult:
        query = latest_user_input(messages)
        if not query:
            raise ValueError("Input content is required and cannot be empty")

        session_id = ensure_conversation_id(conversation_id)
        payload: Dict[str, Any] = {"query": query, "session_id": session_id}
        images = _agent_images(messages[-1])
        if images:
            payload["images"] = images
        logger.debug(f"Agents request: query length {len(query)}, session {session_id}, {len(images)} image(s).")

        input_message = messages[-1] if messages and messages[-1].get("type") == "input" else None
        handle = await self._registry.register(session_id)

        # --- Streaming attempt ---
        try:
            logger.info("Attempting streaming response from agents backend.")
            response = await self._cancellable(self._open_stream(payload, session_id), handle)
        except RequestCancelledError:
            await self._registry.release(handle)
            raise
        except (ChatTransportError, httpx.HTTPError) as e:
            logger.warning(f"Streaming failed, falling back to regular request: {e}")
            response = None

        if response is not None:
            if "application/json" in response.headers.get("content-type", ""):
                try:
                    data = json.loads(await response.aread())
                finally:
                    await response.aclose()
                    await self._registry.release(handle)
                return self._format_answer(data, session_id, input_message)
            logger.info("Streaming response opened; returning stream to caller.")
            return ChatResult(
                messages=[],
                conversation_id=session_id,
                interaction_id=make_interaction_id(session_id),
                stream=self._iter_chunks(response, handle),
                on_close=functools.partial(self._close_stream, response, handle),
            )

        # --- Regular request ---
        try:
            data = await self._post_with_retry(self.config.chat_endpoint, payload, handle)
        finally:
            await self._registry.release(handle)
        return self._format_answer(data, session_id, input_message)

    async def regenerate(
        self,
        conversation_id: str,
        interaction_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
    ) -> ChatResult:
        session_id = ensure_conversation_id(conversation_id)
        payload = {"query": REGENERATE_QUERY, "session_id": session_id}
        logger.info(f"Regenerating response for conversation: {conversation_id}")
        handle = await self._registry.register(session_id)
        try:
            data = await self._post_with_retry(self.config.chat_endpoint, payload, handle)
        finally:
            await self._registry.release(handle)
        return self._format_answer(data, session_id, None)

    async def abort(self, conversation_id: str) -> bool:
        return await self._registry.abort(conversation_id)

    async def health_check(self) -> Dict[str, Any]:
        try:
            response = await self.client.get("/health", timeout=HEALTH_TIMEOUT_S)
        except httpx.HTTPError as e:
            return {"status": "unhealthy", "details": {"error": str(e)}}
        if response.is_success:
            try:
                details = response.json()
            except ValueError:
                details = {}
            return {"status": "healthy", "details": details}
        return {"status": "unhealthy", "details": {"statusCode": response.status_code}}

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self, session_id: str) -> Dict[str, str]:
        return {"X-Conversation-Id": session_id, "X-Request-Source": REQUEST_SOURCE}

    async def _open_stream(self, payload: Dict[str, Any], session_id: str) -> httpx.Response:
        headers = {**self._headers(session_id), "Accept": "text/event-stream", "Cache-Control": "no-cache"}
        request = self.client.build_request("POST", self.config.stream_endpoint, json=payload, headers=headers)
        response = await self.client.send(request, stream=True)
        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error(f"Agents streaming API error response: {response.status_code} - {body}")
            raise ChatTransportError(
                f"Agents streaming API error: {response.status_code} - {body}",
                status_code=response.status_code,
                body=body,
            )
        return response

    async def _iter_chunks(self, response: httpx.Response, handle: CancellationHandle) -> AsyncIterator[bytes]:
        try:
            async for chunk in iterate_until_cancelled(response.aiter_bytes(), handle):
                yield chunk
        finally:
            await self._close_stream(response, handle)

    async def _close_stream(self, response: httpx.Response, handle: CancellationHandle) -> None:
        try:
            await response.aclose()
        finally:
            await self._registry.release(handle)

    async def _post_with_retry(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        handle: CancellationHandle,
    ) -> Dict[str, Any]:
        headers = self._headers(handle.conversation_id)
        for attempt in range(self.max_retry_attempts + 1):
            try:
                response = await self._cancellable(self.client.post(endpoint, json=payload, headers=headers), handle)
                if response.status_code >= 400:
                    logger.error(f"Agents API error response: {response.status_code} - {response.text}")
                    raise ChatTransportError(
                        f"Agents API error: {response.status_code} - {response.text}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                try:
                    return response.json()
                except ValueError as e:
                    raise ChatTransportError(
                        "Agents API returned a non-JSON body.",
                        status_code=response.status_code,
                        body=response.text,
                        original_error=e,
                    ) from e
            except httpx.TransportError as e:
                error = ChatTransportError(f"Agents request failed: {e}", original_error=e)
            except ChatTransportError as e:
                error = e

            if not error.retryable or attempt >= self.max_retry_attempts:
                logger.error(f"Agents request failed after {attempt + 1} attempt(s): {error}")
                raise error
            delay = (self.retry_backoff_s * (2 ** attempt)) + random.uniform(0, 1)
            logger.warning(f"Agents backend unavailable or rate limited. Retrying in {delay:.2f}s...")
            await asyncio.sleep(delay)

        raise ChatTransportError("Agents request failed.")

    async def _cancellable(self, awaitable: Awaitable[Any], handle: CancellationHandle) -> Any:
        """Await `awaitable` as a task that an abort of `handle` cancels."""
        task = asyncio.ensure_future(awaitable)
        handle.add_callback(task.cancel)
        try:
            return await task
        except asyncio.CancelledError:
            if handle.cancelled:
                raise RequestCancelledError(f"Request for conversation {handle.conversation_id} was aborted.")
            raise

    def _format_answer(
        self,
        data: Dict[str, Any],
        session_id: str,
        input_message: Optional[Dict[str, Any]],
    ) -> ChatResult:
        conversation_id = data.get("session_id") or session_id
        messages = []
        if input_message is not None:
            messages.append(dict(input_message))
        messages.append(output_message(data.get("response") or "", conversation_id, sources=data.get("sources")))
        metadata = {
            key: data[source_key]
            for key, source_key in (
                ("confidence", "confidence"),
                ("queryTimeMs", "query_time_ms"),
                ("totalResults", "total_results"),
            )
            if source_key in data
        }
        return ChatResult(
            messages=messages,
            conversation_id=conversation_id,
            interaction_id=make_interaction_id(conversation_id),
            metadata=metadata,
        )


def _agent_images(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    images = []
    for image in message.get("images") or []:
        if not isinstance(image, dict) or not image.get("data"):
            continue
        entry = {"data": image["data"], "mime_type": image.get("mimeType") or image.get("mime_type")}
        if image.get("filename"):
            entry["filename"] = image["filename"]
        images.append(entry)
    return images
