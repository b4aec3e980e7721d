"""
Engine hosting runtime: instance lifecycle and the instance pool.
"""

from __future__ import annotations

from .instance import CommandResult, EngineInstance, InstanceState, ObjectInfo
from .pool import InstancePool, PoolEntry

__all__ = [
    "CommandResult",
    "EngineInstance",
    "InstancePool",
    "InstanceState",
    "ObjectInfo",
    "PoolEntry",
]
