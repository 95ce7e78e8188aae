"""
Migration orchestration.

The engine runs a single migration unit through its phases; the batch
coordinator runs many units under a shared concurrency and failure
policy.
"""

from .engine import MigrationEngine
from .batch import BatchCoordinator

__all__ = [
    "MigrationEngine",
    "BatchCoordinator",
]
