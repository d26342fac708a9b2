"""
Overwatch - hierarchical agent orchestration and self-healing supervision.

This package provides a small control plane for logical worker agents with:
- Capability-based agent lookup and spawning
- Task decomposition and delegation
- Workload balancing
- Failure recording and automatic recovery
- Mutual monitoring and watchdog supervision
- Process-level circuit breaking over pm2
"""

__version__ = "0.1.0"
__author__ = "Overwatch Team"

__all__ = [
    '__version__',
]
