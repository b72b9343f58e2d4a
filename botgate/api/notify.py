"""
Notification relay — POST /api/notify-telegram

Lets edge deployments notify without holding the bot token themselves.
Body: {"text": "...", "mainDomain": "example.com"}
"""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from botgate.config import Settings, get_settings
from botgate.core.notify import TelegramNotifier

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["notify"])


class NotifyPayload(BaseModel):
    text: str = ""
    main_domain: str = Field(default="unknown-domain", alias="mainDomain")


def get_relay_notifier(settings: Settings = Depends(get_settings)) -> TelegramNotifier:
    return TelegramNotifier(
        settings.telegram_bot_token,
        settings.telegram_chat_id,
        timeout=settings.notify_timeout,
    )


@router.post("/notify-telegram")
async def notify_telegram(
    payload: NotifyPayload,
    notifier: TelegramNotifier = Depends(get_relay_notifier),
):
    if not notifier.token or not notifier.chat_id:
        logger.warning("notify_relay_no_secrets")
        return PlainTextResponse("no-secrets", status_code=200)

    delivered = await notifier.send(payload.text, payload.main_domain)
    if not delivered:
        return PlainTextResponse("delivery failed", status_code=500)
    return PlainTextResponse("ok", status_code=200)
