"""
BaseService -- abstract base for all billing kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for every
    write-path service.  Services receive a SQLAlchemy ``Session`` that they
    use via ``session.flush()`` -- never ``session.commit()``.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction and
    never commit.  The caller (``session_scope``, the API session dependency,
    or a test) owns commit/rollback, which is what makes a percentage check
    and the write it guards one atomic unit.
"""

from abc import ABC
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for billing kernel services.

    Guarantees:
        - The service never calls ``session.commit()``.
        - ``_savepoint()`` isolates a statement that may violate a constraint,
          so the IntegrityError can be translated without poisoning the
          caller's transaction.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()

    @contextmanager
    def _savepoint(self) -> Iterator[None]:
        """Run a flush inside SAVEPOINT; roll back only the savepoint on IntegrityError."""
        savepoint = self.session.begin_nested()
        try:
            yield
            self.session.flush()
        except IntegrityError:
            savepoint.rollback()
            raise
        savepoint.commit()
