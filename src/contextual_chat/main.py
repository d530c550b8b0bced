# src/contextual_chat/main.py
from dotenv import load_dotenv
load_dotenv()
import asyncio
import os
import logging
import argparse
from typing import Optional

from quart import Quart
from quart_cors import cors
import hypercorn.asyncio
from hypercorn.config import Config

from contextual_chat.chat.base import ChatService
from contextual_chat.chat.selector import ChatServiceSelector
from contextual_chat.core.config import APP_CONFIG, APP_STATE, ChatBackendConfig

script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(os.path.dirname(script_dir))
LOG_DIR = os.path.join(project_root, "logs")

app_logger = logging.getLogger("quart.app")


class StreamDisconnectFilter(logging.Filter):
    """Drops the noise hypercorn logs when an SSE client goes away mid-stream."""
    def filter(self, record):
        message = record.getMessage()
        return not ("text/event-stream" in message and "disconnect" in message.lower())


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    handler.addFilter(StreamDisconnectFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    app_logger.setLevel(level)
    app_logger.addHandler(handler)
    app_logger.propagate = False # Prevent duplicate messages in the root logger

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("hypercorn.access").propagate = False
    logging.getLogger("hypercorn.error").propagate = False

    # Context access audit trail goes to its own file
    os.makedirs(LOG_DIR, exist_ok=True)
    audit_handler = logging.FileHandler(os.path.join(LOG_DIR, "context_audit.log"))
    audit_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
    audit_logger = logging.getLogger("contextual_chat.audit")
    audit_logger.setLevel(logging.INFO)
    audit_logger.addHandler(audit_handler)
    audit_logger.propagate = False


def create_app(config: Optional[ChatBackendConfig] = None, chat_service: Optional[ChatService] = None) -> Quart:
    """
    Build the Quart app. `chat_service` is used as-is when given (tests);
    otherwise the service is wired from `config` when the server starts.
    """
    config = config or APP_CONFIG
    app = Quart(__name__)
    app = cors(app, allow_origin="*")

    # Long answers stream for minutes; don't let Quart cut them off.
    app.config['RESPONSE_TIMEOUT'] = max(60, int(config.agent.timeout_s) + 60)
    app.config['REQUEST_TIMEOUT'] = None

    from contextual_chat.api.routes import assistant_bp
    app.register_blueprint(assistant_bp)

    if chat_service is not None:
        APP_STATE["chat_service"] = chat_service

    @app.before_serving
    async def startup():
        if APP_STATE.get("chat_service") is None:
            APP_STATE["chat_service"] = ChatServiceSelector.create(config)
        service = APP_STATE["chat_service"]
        app_logger.info(f"Chat service ready: {type(service).__name__}")

        host = APP_STATE.get('server_host', '127.0.0.1')
        port = APP_STATE.get('server_port', 5060)
        print(f"\n{'='*60}")
        print(f"  Contextual chat service initialized and ready!")
        print(f"  Listening on http://{host}:{port}/api/assistant")
        print(f"{'='*60}\n")

    @app.after_serving
    async def shutdown():
        service = APP_STATE.get("chat_service")
        if service is not None:
            try:
                await service.close()
            except Exception as e:
                app_logger.error(f"Error closing chat service: {e}", exc_info=True)
            APP_STATE["chat_service"] = None

    return app


async def main(args):
    print("\n--- Starting Hypercorn Server for Quart App ---")
    host = args.host
    port = args.port
    APP_STATE['server_host'] = host
    APP_STATE['server_port'] = port
    app = create_app()
    config = Config()
    config.bind = [f"{host}:{port}"]
    config.accesslog = None
    config.errorlog = None
    config.read_timeout = max(600, int(APP_CONFIG.agent.timeout_s))
    app_logger.info(f"Hypercorn read timeout set to {config.read_timeout} seconds.")
    await hypercorn.asyncio.serve(app, config)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the contextual chat assistant service.")
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host address to bind the server to. Use '0.0.0.0' for Docker."
    )
    parser.add_argument(
        "--port",
        type=int,
        default=5060,
        help="Port to bind the server to."
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--no-context", action="store_true", help="Disable contextual chat and talk to the base service directly.")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    if args.no_context:
        APP_CONFIG.contextual_chat.enabled = False
        print("\n--- CONTEXTUAL CHAT DISABLED: Messages are sent without dashboard context. ---\n")

    backend = f"agents backend at {APP_CONFIG.agent.base_url}" if APP_CONFIG.agent.enabled else f"Ollama at {APP_CONFIG.ollama.host}"
    print(f"\n--- CHAT BACKEND: {backend} ---\n")

    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        print("\nServer shut down.")
