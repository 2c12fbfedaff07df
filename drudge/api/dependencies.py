import hmac

from fastapi import Header, HTTPException, Request

from drudge.config import Settings
from drudge.core.engine import Engine


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_internal_token(
    request: Request,
    x_internal_token: str = Header(default="", alias="X-Internal-Token"),
) -> None:
    """Guard for mutating operations, callable by internal services only.

    Raises:
        HTTPException: 500 when no token is configured, 403 when the header
            is missing or does not match.
    """
    expected = get_settings(request).internal_token
    if not expected:
        raise HTTPException(status_code=500, detail="Internal token not configured")
    if not x_internal_token or not hmac.compare_digest(
        x_internal_token.encode(), expected.encode()
    ):
        raise HTTPException(status_code=403, detail="Invalid internal token")
