"""
Shared utilities for Overwatch: logging, errors, configuration,
scheduling, messaging and metrics.
"""
