"""
HTTP surface of the assistant: send, regenerate, abort, health, status.

Streaming answers are forwarded as Server-Sent Events; everything else is
JSON. Request bodies are validated with pydantic.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from quart import Blueprint, Response, jsonify, request

from contextual_chat.chat.base import ChatResult, ChatService
from contextual_chat.core.config import APP_STATE
from contextual_chat.core.exceptions import ContextualChatError, RequestCancelledError
from contextual_chat.core.models import Snapshot
from contextual_chat.llm.stream import CompleteEvent, ErrorEvent, StreamReconstructor, format_sse

assistant_bp = Blueprint("assistant", __name__, url_prefix="/api/assistant")
app_logger = logging.getLogger("quart.app")


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[Dict[str, Any]] = Field(default_factory=list)
    input: Optional[Dict[str, Any]] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    ui_context: Optional[Dict[str, Any]] = Field(default=None, alias="uiContext")
    stream: bool = True

    def outbound_messages(self) -> List[Dict[str, Any]]:
        messages = list(self.messages)
        if self.input is not None:
            messages.append({"type": "input", "contentType": "text", **self.input})
        return messages


class RegenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., min_length=1, alias="conversationId")
    interaction_id: Optional[str] = Field(default=None, alias="interactionId")
    ui_context: Optional[Dict[str, Any]] = Field(default=None, alias="uiContext")
    stream: bool = True


class AbortRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., min_length=1, alias="conversationId")


def _get_service() -> Optional[ChatService]:
    return APP_STATE.get("chat_service")


def _parse_snapshot(raw: Optional[Dict[str, Any]]) -> Optional[Snapshot]:
    if not raw:
        return None
    try:
        return Snapshot.from_dict(raw)
    except Exception as e:
        # A broken snapshot only costs the context, never the answer.
        app_logger.warning(f"Ignoring malformed uiContext: {e}")
        return None


def _validation_error(e: ValidationError):
    app_logger.warning(f"Assistant request validation error: {e}")
    return jsonify({"error": "Invalid request", "details": e.errors(include_url=False, include_context=False)}), 400


def _sse_chunk(item: Any) -> Any:
    if isinstance(item, (bytes, str)):
        return item
    return format_sse(item.to_dict())


async def _collect(result: ChatResult) -> Tuple[Dict[str, Any], int]:
    """Drain a streamed result into the non-streaming JSON shape."""
    reconstructor = StreamReconstructor(result.conversation_id)
    terminal = None
    try:
        async for item in result.stream:
            if isinstance(item, (bytes, str)):
                reconstructor.feed(item)
            elif isinstance(item, (CompleteEvent, ErrorEvent)):
                terminal = item
    finally:
        await result.aclose()
    if terminal is None:
        reconstructor.finish()
        terminal = reconstructor.result

    if isinstance(terminal, CompleteEvent):
        return {
            "messages": terminal.messages or [],
            "conversationId": terminal.conversation_id or result.conversation_id,
            "interactionId": terminal.interaction_id or result.interaction_id,
        }, 200
    error = terminal.error if isinstance(terminal, ErrorEvent) else "The chat backend returned no response."
    return {"error": error, "conversationId": result.conversation_id}, 502


async def _respond(service: ChatService, result: ChatResult, want_stream: bool):
    if not result.is_stream:
        return jsonify(result.to_dict())
    if not want_stream:
        body, status = await _collect(result)
        return jsonify(body), status

    async def event_stream():
        try:
            async for item in result.stream:
                yield _sse_chunk(item)
        except asyncio.CancelledError:
            app_logger.info(f"Client disconnected; aborting conversation {result.conversation_id}.")
            await service.abort(result.conversation_id)
            raise
        finally:
            await result.aclose()

    response = Response(event_stream(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Conversation-Id"] = result.conversation_id
    return response


def _error_response(e: Exception, conversation_id: Optional[str]):
    if isinstance(e, RequestCancelledError):
        return jsonify({"aborted": True, "conversationId": conversation_id}), 200
    if isinstance(e, ValueError):
        return jsonify({"error": str(e)}), 400
    if isinstance(e, ContextualChatError):
        app_logger.error(f"Chat request failed ({e.error_type.value}): {e}")
        return jsonify({"error": str(e), "type": e.error_type.value}), 502
    app_logger.error(f"Unexpected error in chat request: {e}", exc_info=True)
    return jsonify({"error": f"An error occurred: {str(e)}"}), 500


@assistant_bp.route("/send", methods=["POST"])
async def send_message():
    """Sends the conversation to the chat backend, with the dashboard snapshot when one is supplied."""
    service = _get_service()
    if service is None:
        return jsonify({"error": "Chat service not initialized."}), 503

    data = await request.get_json(silent=True) or {}
    try:
        payload = SendRequest.model_validate(data)
    except ValidationError as e:
        return _validation_error(e)

    messages = payload.outbound_messages()
    snapshot = _parse_snapshot(payload.ui_context)
    try:
        result = await service.send(messages, payload.conversation_id, snapshot)
    except Exception as e:
        return _error_response(e, payload.conversation_id)
    return await _respond(service, result, payload.stream)


@assistant_bp.route("/regenerate", methods=["POST"])
async def regenerate_message():
    service = _get_service()
    if service is None:
        return jsonify({"error": "Chat service not initialized."}), 503

    data = await request.get_json(silent=True) or {}
    try:
        payload = RegenerateRequest.model_validate(data)
    except ValidationError as e:
        return _validation_error(e)

    snapshot = _parse_snapshot(payload.ui_context)
    try:
        result = await service.regenerate(payload.conversation_id, payload.interaction_id, snapshot)
    except Exception as e:
        return _error_response(e, payload.conversation_id)
    return await _respond(service, result, payload.stream)


@assistant_bp.route("/abort", methods=["POST"])
async def abort_message():
    service = _get_service()
    if service is None:
        return jsonify({"error": "Chat service not initialized."}), 503

    data = await request.get_json(silent=True) or {}
    try:
        payload = AbortRequest.model_validate(data)
    except ValidationError as e:
        return _validation_error(e)

    aborted = await service.abort(payload.conversation_id)
    return jsonify({"aborted": aborted, "conversationId": payload.conversation_id})


@assistant_bp.route("/health", methods=["GET"])
async def health():
    service = _get_service()
    if service is None:
        return jsonify({"status": "unavailable"}), 503
    return jsonify(await service.health_check())


@assistant_bp.route("/status", methods=["GET"])
async def status():
    service = _get_service()
    if service is None:
        return jsonify({"enabled": False, "contextual": False})
    get_status = getattr(service, "get_status", None)
    if get_status is not None:
        return jsonify(get_status())
    return jsonify({"enabled": True, "contextual": False, "baseService": type(service).__name__})
