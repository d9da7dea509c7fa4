import secrets

from fastapi import Depends, Header, Request

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings, get_settings
from erp_gateway.v1.core.exceptions import UnauthorizedError

logger = get_logger(__name__)


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Dependency that checks the shared API key.

    With no ``api_key`` configured (development only, enforced by settings
    validation) every request is accepted.
    """
    if not settings.api_key:
        return

    if not x_api_key or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning(
            "gateway_auth_rejected",
            path=request.url.path,
            method=request.method,
            has_api_key=bool(x_api_key),
        )
        raise UnauthorizedError()


# Convenience alias for router dependencies
ApiKeyDep = Depends(require_api_key)
