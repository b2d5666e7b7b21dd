"""API routers"""
from .auth import router as auth_router
from .installments import router as installments_router
from .metrics import router as metrics_router
from .reservations import router as reservations_router
from .spaces import router as spaces_router
from .users import router as users_router

__all__ = [
    "auth_router",
    "installments_router",
    "metrics_router",
    "reservations_router",
    "spaces_router",
    "users_router",
]
