"""aiohttp surface for the copilot: ``POST /api/copilot``."""

import asyncio
import importlib
import json
import signal
import sys
from typing import Any, Awaitable, Callable

from aiohttp import web
from pydantic import ValidationError

from consult_copilot.config import Config, set_config
from consult_copilot.exceptions import ConfigurationError, normalize_copilot_error
from consult_copilot.llm import create_provider
from consult_copilot.logging import configure_logging, get_logger
from consult_copilot.orchestrator import CopilotOrchestrator, CopilotRequest

log = get_logger(__name__)

ActionHandler = Callable[[Any], Awaitable[dict[str, Any]]]


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _first_validation_message(error: ValidationError, fallback: str) -> str:
    issues = error.errors(include_url=False)
    if not issues:
        return fallback
    return str(issues[0].get("msg") or fallback)


class CopilotWebServer:
    """Dispatches ``{"action", "payload"}`` requests to copilot actions."""

    def __init__(self, orchestrator: CopilotOrchestrator):
        self.orchestrator = orchestrator
        self.actions: dict[str, ActionHandler] = {
            "chat.run": self._chat_run,
            "ping": self._ping,
        }

    async def _ping(self, payload: Any) -> dict[str, Any]:
        return {"message": "pong"}

    async def _chat_run(self, payload: Any) -> dict[str, Any]:
        request = CopilotRequest.model_validate(payload or {})
        response = await self.orchestrator.run(request)
        return response.to_dict()

    async def copilot_handler(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Unable to parse request payload."}, status=400)

        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid request payload."}, status=400)
        action = body.get("action")
        if not isinstance(action, str) or not action.strip():
            return web.json_response({"error": "Action is required."}, status=400)

        handler = self.actions.get(action)
        if handler is None:
            return web.json_response({"error": f"Unknown Copilot action: {action}"}, status=400)

        try:
            result = await handler(body.get("payload"))
        except ValidationError as e:
            return web.json_response(
                {"error": _first_validation_message(e, "Invalid request payload.")},
                status=400,
            )
        except Exception as e:
            log.error("Copilot action failed", action=action, error=str(e))
            normalized = normalize_copilot_error(e)
            return web.json_response(
                normalized.to_payload(),
                status=normalized.status or 500,
                dumps=_dumps,
            )

        return web.json_response({"result": result}, dumps=_dumps)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/copilot", self.copilot_handler)
        return app


def load_services_factory(path: str) -> Callable[[], tuple[Any, Any]]:
    """Import a ``module:callable`` services factory.

    Raises:
        ConfigurationError if the path is empty or does not resolve
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            "server.services_factory must be set to 'module:callable' returning "
            "(estimates_service, contracts_service)."
        )
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load services factory {path}: {e}") from e
    if not callable(factory):
        raise ConfigurationError(f"Services factory {path} is not callable.")
    return factory


async def _run_server(config: Config) -> None:
    """Start the web server and block until SIGINT/SIGTERM."""
    estimates, contracts = load_services_factory(config.server.services_factory)()
    provider = create_provider(config.llm)
    orchestrator = CopilotOrchestrator.build(provider, estimates, contracts, config=config)
    server = CopilotWebServer(orchestrator)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)
    await site.start()
    log.info("Copilot server started", host=config.server.host, port=config.server.port)

    try:
        await stop_event.wait()
    finally:
        log.info("Copilot server stopping")
        await runner.cleanup()
        await provider.close()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass


def main() -> None:
    """Standalone entry point for consult-copilot-web."""
    cfg = Config.load()
    set_config(cfg)
    configure_logging()

    try:
        run_web_server(cfg)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)
