"""
Module: gacp_kernel.models.sequence
Responsibility: Named counter rows behind application-number allocation.

Architecture position: Kernel > Models.  May import db/base.py only.

Invariants enforced:
    - One row per sequence name (``application_number:<year>``).
    - ``current_value`` only ever increases; the row is read
      ``FOR UPDATE`` before every increment.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from gacp_kernel.db.base import Base


class SequenceCounterModel(Base):
    __tablename__ = "gacp_sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
