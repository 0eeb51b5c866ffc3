"""
API module for Collab Server.

This module provides the external interface:
- HTTP server (REST API over the aggregate engine)

Invariants:
    - All aggregate operations require an actor (X-Actor header)
    - Writes go through AggregateWriter, reads through AggregateReader

How to change safely:
    - Add new routes, don't change the shape of existing responses
    - Keep HTTP status codes aligned with error codes in errors.py
"""

from .http_server import ApiServices, create_http_app

__all__ = [
    "ApiServices",
    "create_http_app",
]
