"""
Persistence for Overwatch.
"""

from .database import Database, Transaction
from .store import OrchestrationStore

__all__ = [
    'Database',
    'Transaction',
    'OrchestrationStore',
]
