"""
Receptionist service entry point.

Runs the HTTP turn API that the telephony adapter calls, or the offline
console demo for development.

Usage:
    HTTP service: python main.py
    Console mode: python main.py console [--scenario booking]
"""

import logging
import sys

from src.config import settings

logger = logging.getLogger(__name__)


def _build_orchestrator():
    """Orchestrator with the OpenAI provider when a key is configured."""
    from src.conversation.orchestrator import TurnOrchestrator
    from src.tools.llm import OpenAIProvider

    llm = None
    if settings.model.api_key:
        llm = OpenAIProvider()
    else:
        logger.warning("OPENAI_API_KEY not set, using keyword classification only")
    return TurnOrchestrator(llm=llm)


def _run_http_mode() -> None:
    """Serve the turn API with uvicorn."""
    import uvicorn

    from src.api.app import create_app

    app = create_app(_build_orchestrator())
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)


def _run_console_mode(argv: list[str]) -> None:
    """Start the offline console demo (no API keys required)."""
    from console_demo import main as console_main

    console_main(argv)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode(sys.argv[2:])
    else:
        _run_http_mode()
