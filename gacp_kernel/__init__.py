"""
GACP Kernel - certification workflow core.

Holds the pieces every other package depends on:
- Closed state, stage, role and milestone vocabularies
- Immutable application snapshots and append-only records
- Typed exceptions and structured JSON logging
- SQLAlchemy persistence with compare-and-set commits
"""

__version__ = "0.1.0"
