import logging

from .errors import BookNotFoundError, BookUnavailableError, InvalidArgumentError
from .models import Book
from .repository import CirculationRepository

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Keeps ``0 <= available_copies <= total_copies`` for every book.

    All counter changes are delegated to atomic repository operations; the
    ledger never reads a count and writes it back.
    """

    def __init__(self, repository: CirculationRepository):
        self.repository = repository

    async def reserve_copy(self, book_id: str) -> int:
        book = await self.repository.reserve_copy(book_id)
        if book is None:
            logger.warning(f"No copy of book {book_id} could be reserved")
            raise BookUnavailableError(book_id)
        logger.info(f"Reserved a copy of book {book_id}, {book.available_copies} left")
        return book.available_copies

    async def release_copy(self, book_id: str) -> int:
        book = await self.repository.release_copy(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        logger.info(f"Released a copy of book {book_id}, {book.available_copies} available")
        return book.available_copies

    async def set_total_copies(self, book_id: str, new_total: int) -> Book:
        if new_total < 1:
            raise InvalidArgumentError("Total copies must be at least 1")
        book = await self.repository.set_total_copies(book_id, new_total)
        if book is None:
            raise BookNotFoundError(book_id)
        logger.info(
            f"Book {book_id} now has {book.total_copies} copies, {book.available_copies} available"
        )
        return book
