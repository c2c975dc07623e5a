import json
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

from taskbridge.supabase_client import get_supabase
from taskbridge.telegram_client import notify_error

logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, Union[str, BaseException]], Awaitable[None]]

STATUS_LEVELS = {"error": logging.ERROR, "fatal": logging.ERROR, "warning": logging.WARNING}


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a consistently formatted logger."""
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        logger.addHandler(handler)

    return logger


def log_sync_event(event_type: str, status: str, message: str, details: Optional[Dict] = None):
    """
    Logs a sync event to the standard logger and the Supabase 'sync_logs' table.

    Args:
        event_type: The type of event (e.g., 'classroom_sync', 'todoist_command')
        status: The status/level (e.g., 'info', 'success', 'error', 'warning')
        message: Human readable message
        details: Optional dictionary with additional details
    """
    level = STATUS_LEVELS.get(status.lower(), logging.INFO)
    logger.log(level, f"[{event_type.upper()}] {message}")

    try:
        payload = {
            "event_type": event_type,
            "status": status,
            "message": message[:500],
        }
        if details:
            payload["message"] += f" | Details: {json.dumps(details, default=str)}"

        get_supabase().table("sync_logs").insert(payload).execute()

    except Exception as e:
        logger.error(f"Failed to write to sync_logs: {e}")


async def report_error(context: str, error: Union[str, BaseException]):
    """
    Operational error sink: sync_logs row plus a (rate limited) Telegram alert.
    """
    log_sync_event(context, "error", str(error))
    await notify_error(context, str(error))
