"""
Context-aware chat service.

ResilientChatService holds a base ChatService and adds three things around
it: the user's message is merged with the dashboard snapshot before it is
sent, streamed answers are reconstructed into well-formed events, and any
failure on the contextual path degrades to a plain call of the base service.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import replace
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional

from contextual_chat.context.prompt_assembler import PromptAssembler
from contextual_chat.context.response_processor import ContextualResponseProcessor
from contextual_chat.context.scorer import ContentScorer, ScoringWeights
from contextual_chat.context.selector import ContextBudgetSelector
from contextual_chat.core.config import ContextualChatConfig
from contextual_chat.core.exceptions import ChatTransportError, RequestCancelledError, StreamProtocolError
from contextual_chat.core.models import Snapshot
from contextual_chat.llm.stream import ErrorEvent, StreamEvent, StreamReconstructor
from .base import ChatResult, ChatService, ContentCallback, ensure_conversation_id
from .registry import CancellationHandle, CancellationRegistry

logger = logging.getLogger("quart.app")


def build_assembler(config: ContextualChatConfig) -> PromptAssembler:
    weights = ScoringWeights().with_overrides(config.type_weights, config.keyword_weights)
    return PromptAssembler(ContextBudgetSelector(ContentScorer(weights)), config)


class ResilientChatService(ChatService):
    """
    Wraps `base` with context augmentation, stream reconstruction and
    fallback. Implements the same ChatService interface as the base, so
    callers never need to know which one they hold.
    """

    def __init__(
        self,
        base: ChatService,
        config: ContextualChatConfig,
        assembler: Optional[PromptAssembler] = None,
        processor: Optional[ContextualResponseProcessor] = None,
        request_timeout_s: Optional[float] = None,
    ):
        self.base = base
        self.config = config
        self.assembler = assembler or build_assembler(config)
        self.processor = processor or ContextualResponseProcessor()
        self.request_timeout_s = request_timeout_s
        self._registry = CancellationRegistry()
        self._stats = {"requests": 0, "enhanced": 0, "fallbacks": 0, "aborted": 0, "streamFailures": 0}

    async def send(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
        on_content: Optional[ContentCallback] = None,
    ) -> ChatResult:
        if not self.config.enabled:
            return await self.base.send(messages, conversation_id, None, on_content)

        conversation_id = ensure_conversation_id(conversation_id)
        handle = await self._registry.register(conversation_id)
        self._stats["requests"] += 1
        try:
            try:
                result = await self._attempt(messages, conversation_id, snapshot, on_content, handle)
            except RequestCancelledError:
                raise
            except Exception as e:
                if handle.cancelled:
                    raise RequestCancelledError(f"Request for conversation {conversation_id} was aborted.") from e
                if not self.config.enable_standard_chat_fallback:
                    logger.error(f"Contextual chat request failed for conversation {conversation_id}: {e}", exc_info=True)
                    raise
                logger.warning(f"Contextual chat failed, falling back to standard chat: {e}")
                self._stats["fallbacks"] += 1
                result = await self._attempt(messages, conversation_id, None, on_content, handle)
        except BaseException:
            await self._registry.release(handle)
            raise

        if not result.is_stream:
            await self._registry.release(handle)
        return result

    async def regenerate(
        self,
        conversation_id: str,
        interaction_id: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
    ) -> ChatResult:
        """
        Ask the base for a new answer to its stored last question. Unlike
        `send` there is no fallback: the base request carries no context to
        drop, so base errors (including ValueError) propagate unchanged. The
        snapshot is only used to annotate the answer.
        """
        if not self.config.enabled:
            return await self.base.regenerate(conversation_id, interaction_id)

        handle = await self._registry.register(conversation_id)
        try:
            result = await self._call_base(self.base.regenerate(conversation_id, interaction_id), handle)
        except BaseException:
            await self._registry.release(handle)
            raise

        if result.is_stream:
            return self._wrap_stream(result, None, handle)
        await self._registry.release(handle)
        return self.processor.process(result, snapshot)

    async def abort(self, conversation_id: str) -> bool:
        aborted = await self._registry.abort(conversation_id)
        base_aborted = await self.base.abort(conversation_id)
        if aborted:
            self._stats["aborted"] += 1
        return aborted or base_aborted

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": True,
            "contextual": self.config.enabled,
            "fallbackEnabled": self.config.enable_standard_chat_fallback,
            "baseService": type(self.base).__name__,
            "activeConversations": self._registry.active_ids(),
            "stats": dict(self._stats),
        }

    async def health_check(self) -> Dict[str, Any]:
        health = await self.base.health_check()
        return {**health, "contextual": self.config.enabled}

    async def close(self) -> None:
        await self.base.close()

    # ------------------------------------------------------------------

    async def _attempt(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: str,
        snapshot: Optional[Snapshot],
        on_content: Optional[ContentCallback],
        handle: CancellationHandle,
    ) -> ChatResult:
        outbound = list(messages)
        if snapshot is not None:
            try:
                outbound = self.assembler.enhance_messages(messages, snapshot)
                if outbound and messages and outbound[-1].get("content") != messages[-1].get("content"):
                    self._stats["enhanced"] += 1
            except Exception as e:
                logger.warning(f"Error enhancing message with UI context, using original message: {e}", exc_info=True)
                outbound = list(messages)

        result = await self._call_base(self.base.send(outbound, conversation_id, None, on_content), handle)

        if result.is_stream:
            return self._wrap_stream(result, on_content, handle)
        result = self.processor.process(result, snapshot)
        return _restore_user_input(result, messages, outbound)

    async def _call_base(self, awaitable: Awaitable[ChatResult], handle: CancellationHandle) -> ChatResult:
        """Run a base call as a task bounded by the request timeout and cancelled by an abort."""
        task = asyncio.ensure_future(asyncio.wait_for(awaitable, self.request_timeout_s))
        handle.add_callback(task.cancel)
        try:
            return await task
        except asyncio.CancelledError:
            if handle.cancelled:
                raise RequestCancelledError(f"Request for conversation {handle.conversation_id} was aborted.")
            raise
        except asyncio.TimeoutError as e:
            raise ChatTransportError(
                f"Chat backend did not answer within {self.request_timeout_s}s.", original_error=e
            ) from e

    def _wrap_stream(
        self,
        result: ChatResult,
        on_content: Optional[ContentCallback],
        handle: CancellationHandle,
    ) -> ChatResult:
        return replace(
            result,
            stream=self._reconstructed_stream(result, on_content, handle),
            on_close=functools.partial(self._close_stream, result, handle),
        )

    async def _close_stream(self, result: ChatResult, handle: CancellationHandle) -> None:
        try:
            await result.aclose()
        finally:
            await self._registry.release(handle)

    async def _reconstructed_stream(
        self,
        result: ChatResult,
        on_content: Optional[ContentCallback],
        handle: CancellationHandle,
    ) -> AsyncIterator[StreamEvent]:
        reconstructor = StreamReconstructor(result.conversation_id, on_content=on_content)
        try:
            async for event in reconstructor.reconstruct(result.stream, handle=handle):
                yield event
            if handle.cancelled:
                logger.info(f"Stream for conversation {result.conversation_id} was aborted.")
                return
            if reconstructor.result is None:
                self._stats["streamFailures"] += 1
                if reconstructor.interrupted is not None:
                    error = StreamProtocolError(
                        f"The chat stream was interrupted before any content arrived: {reconstructor.interrupted}",
                        original_error=reconstructor.interrupted,
                    )
                else:
                    error = StreamProtocolError("The chat backend closed the stream without sending a response.")
                logger.error(f"{error} (conversation {result.conversation_id})")
                yield ErrorEvent(error=str(error), conversation_id=reconstructor.conversation_id)
        finally:
            await self._close_stream(result, handle)


def _restore_user_input(
    result: ChatResult,
    original: List[Dict[str, Any]],
    outbound: List[Dict[str, Any]],
) -> ChatResult:
    """Show the user's own words, not the assembled prompt, in echoed input messages."""
    if not original or not outbound or outbound[-1] is original[-1]:
        return result
    sent = outbound[-1].get("content")
    typed = original[-1].get("content")
    if sent == typed:
        return result
    messages = [
        {**message, "content": typed} if message.get("type") == "input" and message.get("content") == sent else message
        for message in result.messages
    ]
    return replace(result, messages=messages)
