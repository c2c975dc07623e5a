import httpx

from taskbridge.config import Settings

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


async def get_access_token(http: httpx.AsyncClient, settings: Settings) -> str:
    """
    Exchanges the refresh token for a new access token.
    """
    settings.require("google_client_id", "google_client_secret", "google_refresh_token")

    response = await http.post(GOOGLE_TOKEN_URL, data={
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
        "refresh_token": settings.google_refresh_token,
        "grant_type": "refresh_token",
    })
    response.raise_for_status()
    data = response.json()
    return data["access_token"]
