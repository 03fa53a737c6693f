"""API routers."""
from .local import router as local_router, create_local_api, LocalApiContext

__all__ = ["local_router", "create_local_api", "LocalApiContext"]
