from fastapi import Header, HTTPException, status

from loyalty_engine.core.settings import settings


async def require_loyalty_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    if not settings.loyalty_api_key:
        return

    if x_api_key != settings.loyalty_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )