"""API endpoints package for matchguard."""

from matchguard.app.api.metrics import router as metrics_router
from matchguard.app.api.subscriptions import router as subscriptions_router
from matchguard.app.api.webhooks import router as webhooks_router

__all__ = [
    "metrics_router",
    "subscriptions_router",
    "webhooks_router",
]
