"""
Kernel services -- imperative shell around the pure domain.

Repositories that load application snapshots and commit transitions
atomically.
"""

from gacp_kernel.services.repository import (
    ApplicationChanges,
    ApplicationRepository,
    InMemoryApplicationRepository,
)
from gacp_kernel.services.sql_repository import SqlAlchemyApplicationRepository

__all__ = [
    "ApplicationChanges",
    "ApplicationRepository",
    "InMemoryApplicationRepository",
    "SqlAlchemyApplicationRepository",
]
