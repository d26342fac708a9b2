"""
Functional tests for Overwatch.

These tests run several components together against a real SQLite store,
the shared scheduler driven by a manual clock, and the in-process message
bus.

Test Categories:
- Routing: Orchestrator delegation, decomposition and queued dispatch
- Recovery: Failure handling, restart/replace and task reassignment
- Supervision: Mutual monitoring, watchdog pings and self-healing circuits
- Health: Read-only HTTP endpoints
- Control Plane: Full wiring from configuration

Usage:
    pytest tests/functional/  # Run all functional tests
    pytest tests/functional/test_supervision.py  # Run specific file
"""
