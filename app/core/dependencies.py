import hmac

from fastapi import Header, HTTPException, status

from app.core.config import get_settings


def require_internal_token(x_internal_token: str | None = Header(None)) -> None:
    """Guard for cron-invoked trigger endpoints. Open when no token is configured."""
    expected = get_settings().INTERNAL_API_TOKEN
    if not expected:
        return
    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token",
        )
