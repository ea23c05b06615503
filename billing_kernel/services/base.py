"""
BaseService -- abstract base for all billing kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service.  Services receive a SQLAlchemy ``Session`` and
    use ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell around the pure engines.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or rollback themselves.  The caller
      (``transaction_scope``, ``PaymentEventHandler`` or a test) owns
      commit/rollback, so a multi-step allocation is all-or-nothing.

Failure modes:
    - A subclass that calls ``session.commit()`` breaks the atomicity of
      allocation and reversal.
"""

from abc import ABC
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.db.base import Base
from billing_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` (and optionally a ``Clock``) from
        the caller and persists changes with ``session.flush()``.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read models -- those live in
          ``billing_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()

    def _get_or_raise(self, model: type[ModelType], entity_id, error: type[Exception],
                      for_update: bool = False) -> ModelType:
        """Load ``model`` by primary key or raise ``error(entity_id)``."""
        try:
            key = entity_id if isinstance(entity_id, UUID) else UUID(str(entity_id))
        except ValueError:
            raise error(str(entity_id)) from None
        stmt = select(model).where(model.id == key)
        if for_update:
            stmt = stmt.with_for_update()
        entity = self.session.execute(stmt).scalar_one_or_none()
        if entity is None:
            raise error(str(entity_id))
        return entity
