"""
tabledb Test Suite.

This package contains:
- unit/: Unit tests (memory engine, SQLite in a temp directory)
- integration/: Reconnection, multi-handle and on-disk scenarios
"""
