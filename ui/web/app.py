"""
FastAPI Application - Webhook transport setup
=============================================

This module creates the FastAPI application that feeds inbound
messages into a ``Bot`` and serves it with uvicorn.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from core import __version__
from core.config import Config, load_config
from core.exceptions import RuleError
from core.logging import setup_logging, get_logger
from dispatch.bot import Bot, build_bot

logger = get_logger("web.app")


def create_app(
    bot: Optional[Bot] = None,
    config: Optional[Config] = None,
    debug: bool = False
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        bot: Dispatcher to feed; built from config when omitted
        config: Application configuration
        debug: Enable debug mode

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = load_config()

    if bot is None:
        bot = build_bot(config)

    app = FastAPI(
        title="Rulebot",
        description="Webhook transport for a rulebot dispatcher",
        version=__version__,
        debug=debug or config.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.bot = bot
    app.state.config = config

    from .routes import create_router
    app.include_router(create_router(config.web.path))

    @app.exception_handler(RuleError)
    async def rule_error_handler(request: Request, exc: RuleError):
        logger.warning(f"Rejected message: {exc}")
        return JSONResponse(
            status_code=400,
            content={"error": exc.message, "details": exc.details}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc) if debug else "An error occurred"}
        )

    logger.info(f"Web application created, listening path {config.web.path}")

    return app


def run_app(
    host: Optional[str] = None,
    port: Optional[int] = None,
    debug: bool = False,
    config: Optional[Config] = None,
    bot: Optional[Bot] = None
) -> None:
    """
    Run the web application server.

    Args:
        host: Host address to bind, defaults to the configured one
        port: Port to listen on, defaults to the configured one
        debug: Enable debug mode
        config: Application configuration
        bot: Dispatcher to serve
    """
    if config is None:
        config = load_config()

    setup_logging(
        log_dir=config.log_dir,
        log_level="DEBUG" if debug else config.log_level,
        console_output=True
    )

    app = create_app(bot=bot, config=config, debug=debug)

    host = host or config.web.host
    port = port or config.web.port

    logger.info(f"Starting web server on {host}:{port}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="debug" if debug else "info"
    )
