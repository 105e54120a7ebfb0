# Controllers Package
# MVC Controller Layer

from .sync_controller import router as sync_router

__all__ = [
    "sync_router",
]
