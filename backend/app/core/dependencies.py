import hmac

from fastapi import Header, HTTPException, status

from app.core.config import settings


async def require_admin(x_admin_token: str | None = Header(default=None)) -> str:
    if not x_admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if not hmac.compare_digest(x_admin_token, settings.admin_api_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return "admin"
