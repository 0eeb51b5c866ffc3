"""
Collab Server Test Suite.

This package contains:
- unit/: Unit tests (pure logic and single components)
- integration/: Integration tests (sagas, bridge and HTTP over in-memory and SQLite stores)
"""
