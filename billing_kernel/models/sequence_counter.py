"""
Module: billing_kernel.models.sequence_counter
Responsibility: Named monotonic counters backing invoice numbering.
Architecture position: Kernel > Models.  Written only by SequenceService.

Invariants enforced:
    - name is unique; the row is the lock target (SELECT ... FOR UPDATE)
      for every allocation, so two invoices never share a number.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    """

    __tablename__ = "sequence_counters"

    # Sequence name (e.g., "invoice:202410")
    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
