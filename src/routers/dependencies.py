"""Lazy singletons shared by the routers. Tests swap them through ``app.dependency_overrides``."""

from __future__ import annotations

import logging
from typing import Optional

from src.llm_core import LLMProvider, create_provider
from src.profile_context import ProfileManager, Settings, load_settings

logger = logging.getLogger(__name__)

_settings: Optional[Settings] = None
_manager: Optional[ProfileManager] = None
_upstream: Optional[LLMProvider] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_profile_manager() -> ProfileManager:
    """Profile manager built from the settings on first use."""
    global _manager
    if _manager is None:
        _manager = ProfileManager.from_settings(get_settings())
        logger.info("Profile manager ready (db=%s)", get_settings().db_path)
    return _manager


def get_upstream_provider() -> LLMProvider:
    """Provider that chat requests are forwarded to. Raises ConfigurationError without an API key."""
    global _upstream
    if _upstream is None:
        _upstream = create_provider(get_settings().upstream)
    return _upstream


async def shutdown_dependencies() -> None:
    global _settings, _manager, _upstream
    if _upstream is not None:
        await _upstream.aclose()
    if _manager is not None:
        await _manager.aclose()
    _settings = None
    _manager = None
    _upstream = None


__all__ = [
    "get_profile_manager",
    "get_settings",
    "get_upstream_provider",
    "shutdown_dependencies",
]
