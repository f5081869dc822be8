"""
diffdb Test Suite.

This package contains:
- unit/: Unit tests (in-memory and temporary SQLite stores)
- integration/: Integration tests (SQLite file persistence, full workflow)
"""
