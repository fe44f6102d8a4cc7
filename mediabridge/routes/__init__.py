from .stream import stream_router
from .admin import admin_router

__all__ = ["stream_router", "admin_router"]
