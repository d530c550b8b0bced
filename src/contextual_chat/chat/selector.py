"""
Wiring of the chat service from configuration.
"""

from __future__ import annotations

import logging
from typing import Optional

from contextual_chat.core.config import ChatBackendConfig
from contextual_chat.core.exceptions import ConfigurationError
from contextual_chat.llm.agents_client import AgentsChatService
from contextual_chat.llm.ollama_client import OllamaChatService
from .base import ChatService
from .resilient_service import ResilientChatService, build_assembler

logger = logging.getLogger("quart.app")


class ChatServiceSelector:

    @staticmethod
    def create_base(config: ChatBackendConfig) -> ChatService:
        if config.agent.enabled:
            if not config.agent.base_url:
                raise ConfigurationError("The agents backend is enabled but no base URL is configured.")
            logger.info(f"Using agents chat service at {config.agent.base_url}")
            return AgentsChatService(config.agent, config.contextual_chat)
        logger.info(f"Using Ollama chat service at {config.ollama.host} (model: {config.ollama.model})")
        return OllamaChatService(config.ollama)

    @staticmethod
    def create(config: ChatBackendConfig, base_service: Optional[ChatService] = None) -> ChatService:
        """
        Build the service the HTTP layer talks to.

        The base transport is `base_service` when given, otherwise the agents
        backend (if enabled) or Ollama. With contextual chat enabled the base
        is wrapped in a ResilientChatService; if that wiring fails the bare
        base service is returned so chat keeps working without context.
        """
        base = base_service or ChatServiceSelector.create_base(config)
        if not config.contextual_chat.enabled:
            logger.info("Contextual chat is disabled; using the base chat service directly.")
            return base

        logger.info("Contextual chat is enabled, wrapping base service with contextual capabilities.")
        try:
            timeout_s = config.agent.timeout_s if config.agent.timeout_ms > 0 else None
            return ResilientChatService(
                base,
                config.contextual_chat,
                assembler=build_assembler(config.contextual_chat),
                request_timeout_s=timeout_s,
            )
        except Exception as e:
            logger.error(f"Failed to initialize contextual chat, falling back to base service: {e}", exc_info=True)
            return base
