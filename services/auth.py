import uuid

from fastapi import Header, HTTPException

from core.settings import settings


async def require_api_key(x_knowledge_api_key: str | None = Header(default=None)):
    """Simple shared-secret auth.

    - If settings.knowledge_api_key is unset, auth is disabled.
    - Otherwise require X-Knowledge-Api-Key header.
    """
    if not settings.knowledge_api_key:
        return
    if x_knowledge_api_key != settings.knowledge_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


async def current_user_id(x_user_id: str = Header(...)) -> uuid.UUID:
    """User identity is established upstream (session auth); we only trust the forwarded id."""
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
