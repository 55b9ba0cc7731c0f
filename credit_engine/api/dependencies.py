"""
FastAPI Dependencies - Engine access and API key authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Header, HTTPException, Request, status
from structlog import get_logger

from credit_engine.config import settings
from credit_engine.exceptions import AuthenticationError
from credit_engine.services.engine import BillingEngine

logger = get_logger(__name__)


def get_engine(request: Request) -> BillingEngine:
    """
    FastAPI dependency returning the engine built at startup.

    Usage:
        @router.post("/v1/billing/evaluate")
        async def evaluate(engine: BillingEngine = Depends(get_engine)):
            ...
    """
    engine: BillingEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing engine not initialized",
        )
    return engine


def _check_api_key(presented: str | None, expected: str) -> None:
    """
    Constant-time comparison of the presented key.

    Raises:
        AuthenticationError: Missing or wrong key
    """
    if not presented:
        raise AuthenticationError("X-API-Key header required")
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        raise AuthenticationError("Invalid API key")


async def require_api_key(
    x_api_key: str | None = Header(None, description="Orchestrator API key"),
) -> None:
    """
    FastAPI dependency enforcing the shared API key when API_KEY is set.

    Raises:
        HTTPException 401 if the key is missing or invalid
    """
    if not settings.api_key:
        return

    try:
        _check_api_key(x_api_key, settings.api_key)
    except AuthenticationError as exc:
        logger.warning("api_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc
