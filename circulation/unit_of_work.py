import logging
from typing import Any, Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)


class UnitOfWork:
    """Groups storage steps so that they commit together or not at all.

    After each successful step the caller registers the action that undoes
    it. If the block exits with an exception the registered actions run in
    reverse order and the original exception propagates.

        async with UnitOfWork("borrow") as uow:
            await ledger.reserve_copy(book_id)
            uow.on_rollback(ledger.release_copy, book_id)
            ...
    """

    def __init__(self, name: str = "unit of work"):
        self.name = name
        self._compensations: List[Tuple[Callable[..., Awaitable[Any]], tuple]] = []

    def on_rollback(self, action: Callable[..., Awaitable[Any]], *args) -> None:
        self._compensations.append((action, args))

    async def rollback(self) -> None:
        while self._compensations:
            action, args = self._compensations.pop()
            try:
                await action(*args)
            except Exception:
                # Keep undoing the remaining steps; the caller still sees the
                # error that triggered the rollback.
                logger.exception(
                    f"Rollback step {getattr(action, '__name__', action)} failed in {self.name}"
                )

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self._compensations.clear()
            return False

        logger.warning(f"Rolling back {self.name}: {exc}")
        await self.rollback()
        return False
