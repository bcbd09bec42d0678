from .background import BackgroundTaskRunner
from .engine import MemoryEngine
from .service.profile_store import ProfileStore
from .traits.engine import TraitEngine

__all__ = ["BackgroundTaskRunner", "MemoryEngine", "ProfileStore", "TraitEngine"]
