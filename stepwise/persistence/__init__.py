"""Persistence layer for stepwise workflows."""

from __future__ import annotations

from typing import Optional

from ..config import StepwiseConfig, load_config
from .filesystem import FileStateStore
from .inmemory import InMemoryStateStore
from .repository import StateStore


def get_state_store(config: Optional[StepwiseConfig] = None) -> StateStore:
    """Factory function to obtain a state store.

    The backend is selected from ``config.storage.backend``; configuration is
    loaded from the environment when not given.
    """

    config = config or load_config()
    storage = config.storage
    if storage.backend == "inmemory":
        return InMemoryStateStore(backups=storage.backups)
    if storage.backend == "filesystem":
        return FileStateStore(storage.state_dir, backups=storage.backups)
    raise ValueError(f"Unsupported storage backend: {storage.backend}")


__all__ = [
    "StateStore",
    "FileStateStore",
    "InMemoryStateStore",
    "get_state_store",
]
