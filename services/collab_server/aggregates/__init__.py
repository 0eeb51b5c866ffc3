"""
Aggregate reads and writes.

This module provides:
- AggregateReader: joins roots, images, links, profiles and roles in memory
- AggregateWriter: create/update/delete and collaborator changes as sagas
"""

from .reader import AggregateReader, ListFilter, join
from .writer import AggregateWriter, StepOutcome, StepStatus, WriteSaga

__all__ = [
    "AggregateReader",
    "AggregateWriter",
    "ListFilter",
    "StepOutcome",
    "StepStatus",
    "WriteSaga",
    "join",
]
