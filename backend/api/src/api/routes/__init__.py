"""API routes package.

Routers are organized by concern:

- health: Health check endpoints
- webhooks: Billing provider webhook receiver

All routers are registered in main.py with /api prefix.
"""

from api.routes.health import router as health_router
from api.routes.webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "webhooks_router",
]
