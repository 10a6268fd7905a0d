"""
Definition stores

Persistence for workflow definitions and their generated code.
"""

from .definitions import (
    DefinitionStore,
    InMemoryDefinitionStore,
    JsonFileDefinitionStore,
    create_store
)

__all__ = [
    "DefinitionStore",
    "InMemoryDefinitionStore",
    "JsonFileDefinitionStore",
    "create_store"
]
