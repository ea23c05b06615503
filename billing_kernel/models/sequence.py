"""
Module: billing_kernel.models.sequence
Responsibility: Named monotonic counters (audit events, rule creation order).
Architecture position: Kernel > Models.  Written only by SequenceService.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base


class SequenceCounter(Base):
    """
    One named sequence with its current value.

    Row-level locking on this row keeps allocation monotonic under
    concurrency.
    """

    __tablename__ = "billing_sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
