"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Hands out strictly increasing integers per named sequence.  The audit
    trail uses them to define "newest first" and its retention window;
    billing group rules use them to keep creation order when timestamps tie.

Invariants enforced:
    - The locked counter row is the sole source of truth for the next
      value; the aggregate max-plus-one pattern is not used.
    - Transactional: an increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError when two transactions create the same counter row for
      the first time; the losing transaction rolls back and the caller may
      retry.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.logging_config import get_logger
from billing_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    AUDIT_EVENT = "audit_event"
    BILLING_GROUP_RULE = "billing_group_rule"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously returned for ``sequence_name``.
            - The counter row stays locked until the transaction ends.
        """
        counter = self._locked_counter(sequence_name)
        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int:
        """Current value without incrementing (0 for an unused sequence)."""
        value = self._session.execute(
            select(SequenceCounter.current_value).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return value or 0
