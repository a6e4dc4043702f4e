# HTTP routes for the blocklog ledger
from .routes_admin import router as admin_router
from .routes_public import router as public_router

__all__ = ["admin_router", "public_router"]
