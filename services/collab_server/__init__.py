"""
Collab Server - aggregate consistency and authorization engine.

This package manages two structurally identical collaborative aggregates,
Projects and Events. Each aggregate is a root row plus:
- An ordered set of images with exactly one primary image
- A roster of collaborators, each holding a role
- A denormalized membership counter on the root row

The backing store only offers single-table operations, so every aggregate
mutation is a saga of independent writes that must converge:

    ┌─────────┐   ┌──────────────┐   ┌──────────────┐   ┌────────────┐
    │ Caller  │──▶│ Authorization│──▶│  Aggregate   │──▶│ Row store  │
    │ (HTTP)  │   │     Gate     │   │   Writer     │   │ (per table)│
    └─────────┘   └──────────────┘   └──────────────┘   └─────┬──────┘
         ▲                                                    │ change feed
         │        ┌──────────────┐   ┌──────────────┐         ▼
         └────────│  Aggregate   │◀──│ ChangeFeed   │◀── {table, op, row}
                  │ Reader/Cache │   │   Bridge     │
                  └──────────────┘   └──────────────┘

Invariants:
    - A non-empty image set has exactly one primary image after any write
    - The membership counter equals the collaborator link count after any
      write that touched collaborators
    - Authorization and validation run before the first write
    - Writes are never rolled back; failures report the committed steps

How to change safely:
    - Keep AggregateSpec the single source of table and field names
    - New aggregate kinds only need a new AggregateSpec and table definitions
    - Never add a write path that bypasses AggregateWriter

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
