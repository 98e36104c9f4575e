"""
StudySpark Scheduling Backend - Request Authentication
Resolves the calling user through the identity provider
"""

from typing import Optional

import httpx
from fastapi import Header, HTTPException

from config import get_auth_config
from logger import get_logger

logger = get_logger(__name__)


async def verify_token(token: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[str]:
    """
    Ask the identity provider who owns a bearer token.

    Returns the user id, or None when the provider rejects the token or
    cannot be reached.
    """
    config = get_auth_config()
    try:
        async with httpx.AsyncClient(transport=transport) as client:
            resp = await client.get(
                config.verify_url,
                headers={"Authorization": f"Bearer {token}"},
                timeout=config.timeout_seconds
            )
    except httpx.HTTPError as e:
        logger.warning(f"Identity provider unreachable: {e}")
        return None

    if resp.status_code != 200:
        return None

    try:
        data = resp.json()
    except ValueError:
        logger.warning("Identity provider returned a non-JSON body")
        return None
    if not isinstance(data, dict):
        return None

    user_id = data.get("user_id") or data.get("sub") or data.get("id")
    return str(user_id) if user_id else None


async def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    """FastAPI dependency: the authenticated user's id, or 401."""
    config = get_auth_config()

    if config.verify_url:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise HTTPException(status_code=401, detail="Unauthorized")
        user_id = await verify_token(authorization[7:].strip())
        if not user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user_id

    # Development mode: no provider configured
    if config.allow_dev_header and x_user_id and x_user_id.strip():
        return x_user_id.strip()

    raise HTTPException(status_code=401, detail="Unauthorized")
