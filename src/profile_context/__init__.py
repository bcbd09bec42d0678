"""Profile context orchestration: injection text before a chat call, extraction after it."""

from .config import Settings, load_settings
from .errors import InvalidRequestError, ProfileContextError, ProfileNotFoundError
from .manager import ProfileManager

__all__ = [
    "InvalidRequestError",
    "ProfileContextError",
    "ProfileManager",
    "ProfileNotFoundError",
    "Settings",
    "load_settings",
]
