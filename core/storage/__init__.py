from .json_store import (
    ConfigStore,
    InMemoryConfigStore,
    InMemoryStateStore,
    JsonStateStore,
    StateStore,
)

__all__ = [
    "ConfigStore",
    "InMemoryConfigStore",
    "InMemoryStateStore",
    "JsonStateStore",
    "StateStore",
]
