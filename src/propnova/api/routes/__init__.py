"""API routes module."""

from propnova.api.routes.billing import router as billing_router
from propnova.api.routes.health import router as health_router
from propnova.api.routes.me import router as me_router
from propnova.api.routes.payfast import router as payfast_router

__all__ = [
    "billing_router",
    "health_router",
    "me_router",
    "payfast_router",
]
