"""All-or-nothing units of work across several documents.

With a replica set the unit of work is a Motor session transaction: every write
made with `uow.session` commits or aborts together, and a transaction the server
aborts as transient (e.g. a write conflict on the same user document) is run
again from the start. Standalone servers cannot run multi-document transactions,
so with MONGODB_TRANSACTIONS=false the unit of work records a compensating
action after each write and replays them in reverse when the work raises.
"""

from typing import Awaitable, Callable, TypeVar

from motor.motor_asyncio import AsyncIOMotorClientSession
from pymongo.errors import PyMongoError

from tradehub.core.config import get_settings
from tradehub.core.logging import get_logger
from tradehub.db.init import get_client

log = get_logger(__name__)

T = TypeVar("T")
Compensation = Callable[[], Awaitable[object]]

TRANSIENT_LABEL = "TransientTransactionError"
MAX_TRANSACTION_ATTEMPTS = 5


class UnitOfWork:
    def __init__(self, session: AsyncIOMotorClientSession | None):
        self.session = session
        self._compensations: list[Compensation] = []

    @property
    def transactional(self) -> bool:
        return self.session is not None

    def on_rollback(self, action: Compensation) -> None:
        """Register the undo for a write that just succeeded. No-op inside a real transaction."""
        if not self.transactional:
            self._compensations.append(action)

    async def rollback(self) -> None:
        while self._compensations:
            action = self._compensations.pop()
            try:
                await action()
            except Exception:
                # Keep undoing the remaining writes; the leftover needs an operator
                log.exception("compensation_failed", action=getattr(action, "__name__", repr(action)))


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PyMongoError) and exc.has_error_label(TRANSIENT_LABEL)


async def _run_transaction(work: Callable[[UnitOfWork], Awaitable[T]]) -> T:
    attempt = 1
    while True:
        async with await get_client().start_session() as session:
            try:
                async with session.start_transaction():
                    return await work(UnitOfWork(session))
            except PyMongoError as e:
                # Transient means the server aborted: nothing was committed
                if not _is_transient(e) or attempt >= MAX_TRANSACTION_ATTEMPTS:
                    raise
                log.warning("transaction_retry", attempt=attempt, error=str(e))
        attempt += 1


async def atomic(work: Callable[[UnitOfWork], Awaitable[T]]) -> T:
    """Run work(uow) as one unit: every write it makes lands, or none does.

    work may be called more than once with a replica set, so it must build its
    documents from scratch (or idempotently) on every call.
    """
    if get_settings().mongodb_transactions:
        return await _run_transaction(work)

    uow = UnitOfWork(None)
    try:
        return await work(uow)
    except BaseException:
        await uow.rollback()
        raise
