"""Ops assistant: tool-augmented streaming conversation engine."""

__version__ = "0.1.0"

from .config import AgentConfig, AppConfig, CacheConfig, RetrievalConfig

__all__ = ["AgentConfig", "AppConfig", "CacheConfig", "RetrievalConfig", "__version__"]
