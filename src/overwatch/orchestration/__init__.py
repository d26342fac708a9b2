"""
Message routing and decomposition for Overwatch.
"""

from .orchestrator import Orchestrator, RouteResult, chunk_content, route_for

__all__ = [
    'Orchestrator',
    'RouteResult',
    'chunk_content',
    'route_for',
]
