"""
Web Routes - Webhook endpoints
==============================

This module defines the webhook endpoints. The inbound path is
configurable so the bot can sit behind whatever URL a messaging
platform calls:

- ``GET <path>``: verification hook, answers ``{"status": "ok"}``
- ``POST <path>``: one inbound message, answers the turn's outcome
- ``GET <path>/rules``: listing of the registered routes
"""

from typing import Optional, Union

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

from core.logging import get_logger

logger = get_logger("web.routes")


class InboundMessage(BaseModel):
    """Inbound message model. Extra fields reach handlers as ``message.raw``."""
    model_config = ConfigDict(extra="allow")

    uid: Optional[Union[str, int]] = None
    type: str = "text"
    text: Optional[str] = None


def _join(path: str, suffix: str) -> str:
    return path.rstrip("/") + suffix


def create_router(path: str = "/") -> APIRouter:
    """
    Build the webhook router.

    Args:
        path: URL path of the webhook

    Returns:
        Router with the webhook endpoints
    """
    router = APIRouter()

    @router.get(path)
    async def verify(request: Request):
        """Answer platform verification requests."""
        return {"status": "ok"}

    @router.post(path)
    async def receive(request: Request, inbound: InboundMessage):
        """Dispatch one inbound message."""
        bot = request.app.state.bot

        logger.info(f"Webhook message from {inbound.uid}")

        message = await bot.reply(inbound.model_dump())
        return message.to_dict()

    @router.get(_join(path, "/rules"))
    async def list_rules(request: Request):
        """List the registered routes in priority order."""
        bot = request.app.state.bot
        return {
            "rules": [rule.to_dict() for rule in bot.routes],
            "wait_rules": bot.waits.names(),
        }

    return router
