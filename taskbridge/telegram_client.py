import os
import httpx
import logging
import traceback
from datetime import datetime, timezone
from typing import Dict, Optional

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID")

# Sync errors always reach the sync_logs table; chat alerts are opt-in
ALERTS_ENABLED = os.environ.get("TELEGRAM_ERROR_NOTIFICATIONS_ENABLED", "false").lower() in ("true", "1", "yes", "enabled")

ALERT_COOLDOWN_SECONDS = 600

_alerted_at: Dict[str, datetime] = {}


async def send_telegram_message(text: str, http: Optional[httpx.AsyncClient] = None):
    """Post a Markdown message to the configured chat. Delivery problems are only logged."""
    if not TELEGRAM_BOT_TOKEN or not TELEGRAM_CHAT_ID:
        logger.warning("TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID not set, message dropped")
        return

    url = f"{TELEGRAM_API_URL}/bot{TELEGRAM_BOT_TOKEN}/sendMessage"
    payload = {"chat_id": TELEGRAM_CHAT_ID, "text": text, "parse_mode": "Markdown"}
    try:
        if http is not None:
            response = await http.post(url, json=payload, timeout=10.0)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(url, json=payload)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Telegram message not delivered: {e}")


def _cooling_down(alert_key: str, now: datetime) -> bool:
    last = _alerted_at.get(alert_key)
    return last is not None and (now - last).total_seconds() < ALERT_COOLDOWN_SECONDS


async def notify_error(context: str, error: str):
    """
    Alert the chat about a failed job or command.

    The same context and message prefix alerts at most once per
    ALERT_COOLDOWN_SECONDS.
    """
    if not ALERTS_ENABLED:
        logger.debug(f"Alerts disabled, not sending {context}: {error[:100]}")
        return

    now = datetime.now(timezone.utc)
    alert_key = f"{context}:{error[:50]}"
    if _cooling_down(alert_key, now):
        logger.info(f"Alert for {context} suppressed (cooldown)")
        return
    _alerted_at[alert_key] = now

    details = error
    trace = traceback.format_exc()
    # format_exc() outside an except block yields "NoneType: None"
    if not trace.startswith("NoneType: None"):
        details = f"{error}\n\nTraceback:\n{trace}"[:3000]

    await send_telegram_message(f"🚨 *{context} failed*\n```\n{details}\n```")
