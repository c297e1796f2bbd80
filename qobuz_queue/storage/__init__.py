"""
Storage Layer.

This package handles all data persistence: the configuration file, the
queue database, and the mirror that keeps it in step with the engine.
"""

from .config_manager import ConfigManager
from .mirror import PersistenceMirror, restore_engine
from .queue_store import QueueStore

__all__ = ["ConfigManager", "PersistenceMirror", "QueueStore", "restore_engine"]
