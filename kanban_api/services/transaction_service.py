"""
Transaction coordinator.

``run_transaction(handle, work)`` runs ``work(executor)`` as one atomic unit.
The strategy depends on the handle:

- Handles with a local transaction primitive (``EngineDatabase``) use
  ``DirectTransactionRunner``: a native BEGIN/COMMIT/ROLLBACK through
  ``engine.begin()``.
- Remote proxy handles use ``BatchedTransactionRunner``: writes are recorded
  as ``(query, params)`` tuples and submitted to the proxy's ``/transaction``
  endpoint in one request once ``work`` returns.

Nested calls on the same handle inside one task reuse the outer transaction
(or append to the outer batch). Any failure aborts the whole unit and
surfaces as ``TransactionAborted`` chained from the first error, except
client errors (``KanbanError`` with a 4xx status) which propagate unchanged.
"""

import logging
from abc import ABC, abstractmethod
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..database import (
    DatabaseHandle,
    Executor,
    ProxyDatabase,
    Statement,
    compile_statement,
)
from ..exceptions import KanbanError, TransactionAborted

logger = logging.getLogger(__name__)

T = TypeVar("T")
Work = Callable[[Executor], Awaitable[T]]

# (handle, executor) of the transaction open in the current task
_active_transaction: ContextVar[Optional[tuple[DatabaseHandle, Executor]]] = ContextVar(
    "active_transaction", default=None
)


def _is_client_error(error: BaseException) -> bool:
    return isinstance(error, KanbanError) and 400 <= error.status_code < 500


class TransactionRunner(ABC):
    """Runs a unit of work atomically against one handle."""

    def __init__(self, handle: DatabaseHandle) -> None:
        self.handle = handle

    def _outer_executor(self) -> Optional[Executor]:
        active = _active_transaction.get()
        if active is not None and active[0] is self.handle:
            return active[1]
        return None

    async def run(self, work: Work[T]) -> T:
        outer = self._outer_executor()
        if outer is not None:
            return await work(outer)

        try:
            return await self._run_outermost(work)
        except TransactionAborted:
            raise
        except Exception as e:
            if _is_client_error(e):
                raise
            logger.error(
                f"Transaction aborted on {self.handle.kind} "
                f"(tenant={self.handle.tenant_id or 'default'}): {e}"
            )
            raise TransactionAborted() from e

    @abstractmethod
    async def _run_outermost(self, work: Work[T]) -> T:
        """Open a new atomic unit, run ``work`` in it and commit."""


class DirectTransactionRunner(TransactionRunner):
    """Native transaction on a local SQLAlchemy engine."""

    async def _run_outermost(self, work: Work[T]) -> T:
        async with self.handle.begin() as executor:
            token = _active_transaction.set((self.handle, executor))
            try:
                return await work(executor)
            finally:
                _active_transaction.reset(token)


class BatchCollector(Executor):
    """
    Executor that records writes for later batch submission.

    Reads go straight to the proxy and therefore do not observe writes
    recorded earlier in the same batch.
    """

    def __init__(self, handle: ProxyDatabase) -> None:
        self.handle = handle
        self.queries: list[tuple[str, list[Any]]] = []

    async def fetch_all(self, statement: Statement) -> list[dict[str, Any]]:
        return await self.handle.fetch_all(statement)

    async def fetch_one(self, statement: Statement) -> Optional[dict[str, Any]]:
        return await self.handle.fetch_one(statement)

    async def execute(self, statement: Statement) -> int:
        self.queries.append(compile_statement(statement))
        # Row counts are unknown until the batch runs
        return 0


class BatchedTransactionRunner(TransactionRunner):
    """Collects statements and submits them to the proxy as one unit."""

    async def _run_outermost(self, work: Work[T]) -> T:
        collector = BatchCollector(self.handle)
        token = _active_transaction.set((self.handle, collector))
        try:
            result = await work(collector)
        finally:
            _active_transaction.reset(token)

        if collector.queries:
            await self.handle.execute_batch(collector.queries)
        return result


def runner_for(handle: DatabaseHandle) -> TransactionRunner:
    """Pick the transaction strategy for a handle."""
    if handle.supports_local_transactions:
        return DirectTransactionRunner(handle)
    return BatchedTransactionRunner(handle)


async def run_transaction(handle: DatabaseHandle, work: Work[T]) -> T:
    """
    Run ``work`` atomically against ``handle``.

    Args:
        handle: Tenant database handle
        work: Coroutine function receiving the transaction executor

    Returns:
        Whatever ``work`` returns

    Raises:
        TransactionAborted: If any statement failed; nothing was applied
        KanbanError: Client errors raised by ``work`` (after rollback)
    """
    return await runner_for(handle).run(work)


__all__ = [
    "BatchCollector",
    "BatchedTransactionRunner",
    "DirectTransactionRunner",
    "TransactionRunner",
    "run_transaction",
    "runner_for",
]
