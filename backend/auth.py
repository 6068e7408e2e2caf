"""
Optional API key guard.
When API_KEY is set every protected route requires it; when it is empty the
service runs open (single-user local tool).
"""
import hmac
import os

from fastapi import HTTPException, Query, Security, status
from fastapi.security import APIKeyHeader

_API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def _auth_error(
    *,
    code: str,
    detail: str,
    user_action: str,
    status_code: int = status.HTTP_401_UNAUTHORIZED,
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": code, "detail": detail, "user_action": user_action},
    )


def verify_api_key(
    header_key: str = Security(_API_KEY_HEADER),
    query_key: str = Query(None, alias="api_key"),
) -> str:
    """
    FastAPI dependency that raises on missing/invalid API key.
    Accepts the key via X-API-Key header OR ?api_key= query param
    (needed for <a download> / <video src> links, which cannot send headers).
    Uses constant-time comparison.
    """
    expected = os.environ.get("API_KEY", "")
    if not expected:
        return ""

    api_key = header_key or query_key
    if not api_key or not hmac.compare_digest(api_key.encode(), expected.encode()):
        raise _auth_error(
            code="invalid_api_key",
            detail="Invalid or missing X-API-Key.",
            user_action="Provide the configured API key and retry.",
            status_code=status.HTTP_403_FORBIDDEN,
        )
    return api_key
