from .health import router as health_router
from .outbox import router as outbox_router

__all__ = ["health_router", "outbox_router"]
