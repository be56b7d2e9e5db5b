import asyncio
import logging
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic.alias_generators import to_snake

from circulation.errors import AlreadyBorrowedError, AlreadyExistsError
from circulation.loans import derive_status
from circulation.models import Book, Loan, LoanStatus, Role, User, WishlistEntry, utcnow

from .crud import LibraryRepository, object_id

logger = logging.getLogger(__name__)


class MemoryRepository(LibraryRepository):
    """Process-local storage for development and tests.

    There are no atomic conditional updates here, so copy counters and loan
    records are guarded by one lock per book id and per loan id.
    """

    def __init__(self):
        self.books: Dict[str, Book] = {}
        self.loans: Dict[str, Loan] = {}
        self.users: Dict[str, User] = {}
        self.wishlists: Dict[str, WishlistEntry] = {}
        self._book_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._loan_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._loan_index_lock = asyncio.Lock()

    @staticmethod
    def _new_id(value: Optional[str] = None) -> str:
        if value is not None:
            return str(object_id(value))
        return str(ObjectId())

    # books

    async def find_book(self, book_id: str) -> Optional[Book]:
        return self.books.get(self._new_id(book_id))

    async def reserve_copy(self, book_id: str) -> Optional[Book]:
        book_id = self._new_id(book_id)
        async with self._book_locks[book_id]:
            book = self.books.get(book_id)
            if book is None or not book.is_active or book.available_copies <= 0:
                return None
            book = book.model_copy(
                update={"available_copies": book.available_copies - 1, "updated_at": utcnow()}
            )
            self.books[book_id] = book
            return book

    async def release_copy(self, book_id: str) -> Optional[Book]:
        book_id = self._new_id(book_id)
        async with self._book_locks[book_id]:
            book = self.books.get(book_id)
            if book is None:
                return None
            available = min(book.available_copies + 1, book.total_copies)
            book = book.model_copy(update={"available_copies": available, "updated_at": utcnow()})
            self.books[book_id] = book
            return book

    async def set_total_copies(self, book_id: str, total: int) -> Optional[Book]:
        book_id = self._new_id(book_id)
        async with self._book_locks[book_id]:
            book = self.books.get(book_id)
            if book is None:
                return None
            book = book.model_copy(
                update={
                    "total_copies": total,
                    "available_copies": min(
                        book.available_copies + max(total - book.total_copies, 0), total
                    ),
                    "updated_at": utcnow(),
                }
            )
            self.books[book_id] = book
            return book

    def _isbn_taken(self, isbn: Optional[str], exclude_id: Optional[str] = None) -> bool:
        return isbn is not None and any(
            book.isbn == isbn and book.id != exclude_id for book in self.books.values()
        )

    async def create_book(self, book: Book) -> Book:
        if self._isbn_taken(book.isbn):
            raise AlreadyExistsError("A book with this ISBN already exists")
        book = book.model_copy(update={"id": self._new_id()})
        self.books[book.id] = book
        return book

    async def update_book(self, book_id: str, fields: Dict[str, Any]) -> Optional[Book]:
        book_id = self._new_id(book_id)
        async with self._book_locks[book_id]:
            book = self.books.get(book_id)
            if book is None:
                return None
            if "isbn" in fields and self._isbn_taken(fields["isbn"], exclude_id=book_id):
                raise AlreadyExistsError("A book with this ISBN already exists")
            book = Book.model_validate(
                {**book.model_dump(), **fields, "updated_at": utcnow()}
            )
            self.books[book_id] = book
            return book

    async def find_books(self, book_ids: List[str]) -> Dict[str, Book]:
        book_ids = {self._new_id(book_id) for book_id in book_ids}
        return {book_id: self.books[book_id] for book_id in book_ids if book_id in self.books}

    async def list_books(
        self,
        query=None,
        genre=None,
        published_year=None,
        include_inactive=False,
        sort_by="title",
        sort_order="asc",
        skip=0,
        limit=12,
    ):
        def matches(book: Book) -> bool:
            if not include_inactive and not book.is_active:
                return False
            if genre and genre.lower() not in (book.genre or "").lower():
                return False
            if published_year and book.published_year != published_year:
                return False
            if query:
                needle = query.lower()
                haystack = [book.title, book.author, book.description or ""] + book.tags
                return any(needle in text.lower() for text in haystack)
            return True

        attribute = to_snake(sort_by)

        def sort_key(book: Book):
            # Missing values sort after present ones and compare equal.
            value = getattr(book, attribute, None)
            return (value is None, value if value is not None else 0)

        books = sorted(
            (book for book in self.books.values() if matches(book)),
            key=sort_key,
            reverse=sort_order == "desc",
        )
        return books[skip : skip + limit], len(books)

    async def count_open_loans_for_book(self, book_id: str) -> int:
        book_id = self._new_id(book_id)
        return sum(1 for loan in self.loans.values() if loan.book_id == book_id and loan.is_open)

    # users

    async def create_user(self, user: User) -> User:
        if await self.find_user_by_email(user.email):
            raise AlreadyExistsError("User already exists with this email")
        user = user.model_copy(update={"id": self._new_id()})
        self.users[user.id] = user
        return user

    async def find_user(self, user_id: str) -> Optional[User]:
        return self.users.get(self._new_id(user_id))

    async def find_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        return next((user for user in self.users.values() if user.email == email), None)

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        user = self.users.get(self._new_id(user_id))
        if user is None:
            return None
        if "email" in fields:
            existing = await self.find_user_by_email(fields["email"])
            if existing and existing.id != user.id:
                raise AlreadyExistsError("Email already in use by another account")
        user = user.model_copy(update={**fields, "updated_at": utcnow()})
        self.users[user.id] = user
        return user

    async def list_users(self, role=None, include_inactive=False, skip=0, limit=20):
        users = [
            user
            for user in self.users.values()
            if (role is None or user.role == Role(role))
            and (include_inactive or user.is_active)
        ]
        users.sort(key=lambda user: user.created_at, reverse=True)
        return users[skip : skip + limit], len(users)

    # loans

    async def find_open_loan(self, patron_id: str, book_id: str) -> Optional[Loan]:
        patron_id, book_id = self._new_id(patron_id), self._new_id(book_id)
        return next(
            (
                loan
                for loan in self.loans.values()
                if loan.patron_id == patron_id and loan.book_id == book_id and loan.is_open
            ),
            None,
        )

    async def count_open_loans(self, patron_id: str) -> int:
        return len(await self.open_loan_ids(patron_id))

    async def open_loan_ids(self, patron_id: str) -> List[str]:
        patron_id = self._new_id(patron_id)
        # Generated ids are fixed-width hex, so string order is creation order.
        return sorted(
            loan.id for loan in self.loans.values() if loan.patron_id == patron_id and loan.is_open
        )

    async def create_loan(self, loan: Loan) -> Loan:
        async with self._loan_index_lock:
            if await self.find_open_loan(loan.patron_id, loan.book_id):
                raise AlreadyBorrowedError(loan.patron_id, loan.book_id)
            loan = loan.model_copy(
                update={
                    "id": self._new_id(),
                    "patron_id": self._new_id(loan.patron_id),
                    "book_id": self._new_id(loan.book_id),
                }
            )
            self.loans[loan.id] = loan
            return loan

    async def find_loan(self, loan_id: str) -> Optional[Loan]:
        return self.loans.get(self._new_id(loan_id))

    async def update_loan(self, loan: Loan, expected_version: int) -> Optional[Loan]:
        async with self._loan_locks[loan.id]:
            current = self.loans.get(loan.id)
            if current is None or current.version != expected_version:
                return None
            self.loans[loan.id] = loan
            return loan

    async def delete_loan(self, loan_id: str) -> bool:
        return self.loans.pop(self._new_id(loan_id), None) is not None

    def _select_loans(self, now, patron_id=None, status=None, open_only=False) -> List[Loan]:
        return [
            loan
            for loan in self.loans.values()
            if (patron_id is None or loan.patron_id == patron_id)
            and (status is None or derive_status(loan, now) == LoanStatus(status))
            and (not open_only or loan.is_open)
        ]

    async def list_loans(self, now, patron_id=None, status=None, open_only=False, skip=0, limit=None):
        loans = sorted(
            self._select_loans(now, patron_id, status, open_only),
            key=lambda loan: loan.borrowed_at,
            reverse=True,
        )
        end = skip + limit if limit else None
        return loans[skip:end], len(loans)

    async def count_loans(self, now, patron_id=None, status=None) -> int:
        return len(self._select_loans(now, patron_id, status))

    async def sum_fines(self, patron_id=None) -> float:
        return sum(
            loan.fine_amount
            for loan in self._select_loans(None, patron_id)
            if not loan.is_open
        )

    async def favorite_genres(self, patron_id, limit=5):
        genres = Counter(
            self.books[loan.book_id].genre or "Unknown"
            for loan in self._select_loans(None, patron_id)
            if loan.book_id in self.books
        )
        return [{"genre": genre, "count": count} for genre, count in genres.most_common(limit)]

    async def popular_books(self, limit=5):
        counts = Counter(loan.book_id for loan in self.loans.values())
        return [
            (self.books[book_id], count)
            for book_id, count in counts.most_common()
            if book_id in self.books
        ][:limit]

    # wishlists

    async def add_to_wishlist(self, entry: WishlistEntry) -> WishlistEntry:
        if await self.in_wishlist(entry.user_id, entry.book_id):
            raise AlreadyExistsError("Book already in wishlist")
        entry = entry.model_copy(update={"id": self._new_id()})
        self.wishlists[entry.id] = entry
        return entry

    async def remove_from_wishlist(self, user_id: str, book_id: str) -> bool:
        book_id = self._new_id(book_id)
        for entry_id, entry in list(self.wishlists.items()):
            if entry.user_id == user_id and entry.book_id == book_id:
                del self.wishlists[entry_id]
                return True
        return False

    async def list_wishlist(self, user_id: str) -> List[WishlistEntry]:
        entries = [entry for entry in self.wishlists.values() if entry.user_id == user_id]
        return sorted(entries, key=lambda entry: entry.created_at, reverse=True)

    async def in_wishlist(self, user_id: str, book_id: str) -> bool:
        book_id = self._new_id(book_id)
        return any(
            entry.user_id == user_id and entry.book_id == book_id
            for entry in self.wishlists.values()
        )
