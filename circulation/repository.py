from abc import ABC, abstractmethod
from typing import List, Optional

from .models import Book, Loan


class CirculationRepository(ABC):
    """Persistence operations the circulation core depends on.

    Copy-count methods must be atomic per book: implementations either use a
    conditional update at the storage layer or serialize writers per book id.
    They return ``None`` when the target book does not match (missing, or the
    condition on it failed) rather than raising, so the caller decides which
    domain error applies.
    """

    @abstractmethod
    async def find_book(self, book_id: str) -> Optional[Book]:
        ...

    @abstractmethod
    async def reserve_copy(self, book_id: str) -> Optional[Book]:
        """Decrement ``available_copies`` of an active book that has one left."""

    @abstractmethod
    async def release_copy(self, book_id: str) -> Optional[Book]:
        """Increment ``available_copies``, never beyond ``total_copies``."""

    @abstractmethod
    async def set_total_copies(self, book_id: str, total: int) -> Optional[Book]:
        """Set ``total_copies``.

        Added copies go on the shelf; removed ones clamp ``available_copies``
        down to the new total.
        """

    @abstractmethod
    async def find_open_loan(self, patron_id: str, book_id: str) -> Optional[Loan]:
        ...

    @abstractmethod
    async def count_open_loans(self, patron_id: str) -> int:
        ...

    @abstractmethod
    async def open_loan_ids(self, patron_id: str) -> List[str]:
        """Ids of the patron's open loans, oldest first."""

    @abstractmethod
    async def create_loan(self, loan: Loan) -> Loan:
        """Insert a loan.

        Raises ``AlreadyBorrowedError`` when the patron already has an open
        loan for the same book.
        """

    @abstractmethod
    async def find_loan(self, loan_id: str) -> Optional[Loan]:
        ...

    @abstractmethod
    async def update_loan(self, loan: Loan, expected_version: int) -> Optional[Loan]:
        """Replace a loan only if its stored version is ``expected_version``.

        Returns ``None`` when another writer got there first.
        """

    @abstractmethod
    async def delete_loan(self, loan_id: str) -> bool:
        ...
