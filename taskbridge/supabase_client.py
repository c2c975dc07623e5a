from typing import Optional
from supabase import create_client, Client

from taskbridge.config import Settings

_client: Optional[Client] = None


def get_supabase(settings: Optional[Settings] = None) -> Client:
    """
    Return the process-wide Supabase client, creating it on first use.
    """
    global _client
    if _client is None:
        settings = settings or Settings.from_env()
        settings.require("supabase_url", "supabase_key")
        _client = create_client(settings.supabase_url, settings.supabase_key)
    return _client
