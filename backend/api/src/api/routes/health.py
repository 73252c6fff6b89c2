"""Health check endpoint."""

from typing import Any

from fastapi import APIRouter

from billing import __version__

router = APIRouter(tags=["health"])


@router.get("/health", summary="Service health check")
async def health() -> dict[str, Any]:
    """Liveness probe. Does not touch DynamoDB or SSM."""
    return {
        "status": "healthy",
        "version": __version__,
        "service": "subscription-webhooks",
    }
