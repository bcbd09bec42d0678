from .chat import router as chat_router
from .profiles import router as profiles_router

__all__ = ["chat_router", "profiles_router"]
