"""Telegram webhook handler.

Thin HTTP layer: every update is handed to the channel bridge, which is
shared with the long-polling loop.
"""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from typing import Optional

from app.core.context import AppContext
from app.core.deps import get_context

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/telegram")
async def telegram_webhook(
    request: Request,
    context: AppContext = Depends(get_context),
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
):
    """Receive an update from the Bot API (messages, voice notes, button presses)."""
    secret = context.settings.TELEGRAM_WEBHOOK_SECRET
    if secret and not hmac.compare_digest(x_telegram_bot_api_secret_token or "", secret):
        logger.warning("Telegram webhook called with a bad secret token")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        update = await request.json()
        logger.info("Telegram update %s", update.get("update_id"))
        await context.bridge.process_update(update)
        return {"ok": True}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Webhook error: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
