from routers.admin import router as admin_router
from routers.market import router as market_router
from routers.accounts import router as accounts_router

__all__ = [
    "admin_router",
    "market_router",
    "accounts_router",
]
