import logging
import re
from abc import abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import bson
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from pydantic.alias_generators import to_camel

from circulation.errors import AlreadyBorrowedError, AlreadyExistsError, InvalidArgumentError
from circulation.models import Book, Loan, LoanStatus, Role, User, WishlistEntry, utcnow
from circulation.repository import CirculationRepository

logger = logging.getLogger(__name__)


def object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (bson.errors.InvalidId, TypeError):
        raise InvalidArgumentError(f"Invalid id {value}")


def camel_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        to_camel(key): value.value if isinstance(value, Enum) else value
        for key, value in fields.items()
    }


def loan_status_filter(status: LoanStatus, now: datetime) -> Dict[str, Any]:
    """MongoDB filter selecting loans whose derived status is ``status``."""
    status = LoanStatus(status)
    if status == LoanStatus.RETURNED:
        return {"returnedAt": {"$ne": None}}
    if status == LoanStatus.OVERDUE:
        return {"returnedAt": None, "dueAt": {"$lt": now}}
    if status == LoanStatus.RENEWED:
        return {"returnedAt": None, "dueAt": {"$gte": now}, "status": LoanStatus.RENEWED.value}
    return {
        "returnedAt": None,
        "dueAt": {"$gte": now},
        "status": {"$ne": LoanStatus.RENEWED.value},
    }


class LibraryRepository(CirculationRepository):
    """Everything the HTTP layer needs from storage on top of circulation."""

    async def ensure_indexes(self) -> None:
        pass

    # books

    @abstractmethod
    async def create_book(self, book: Book) -> Book:
        ...

    @abstractmethod
    async def update_book(self, book_id: str, fields: Dict[str, Any]) -> Optional[Book]:
        ...

    @abstractmethod
    async def find_books(self, book_ids: List[str]) -> Dict[str, Book]:
        ...

    @abstractmethod
    async def list_books(
        self,
        query: Optional[str] = None,
        genre: Optional[str] = None,
        published_year: Optional[int] = None,
        include_inactive: bool = False,
        sort_by: str = "title",
        sort_order: str = "asc",
        skip: int = 0,
        limit: int = 12,
    ) -> Tuple[List[Book], int]:
        ...

    @abstractmethod
    async def count_open_loans_for_book(self, book_id: str) -> int:
        ...

    # users

    @abstractmethod
    async def create_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def find_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    @abstractmethod
    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        ...

    @abstractmethod
    async def list_users(
        self,
        role: Optional[Role] = None,
        include_inactive: bool = False,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[User], int]:
        ...

    # loans

    @abstractmethod
    async def list_loans(
        self,
        now: datetime,
        patron_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        open_only: bool = False,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[Loan], int]:
        """Loans, newest first, filtered on their derived status at ``now``."""

    @abstractmethod
    async def count_loans(
        self, now: datetime, patron_id: Optional[str] = None, status: Optional[LoanStatus] = None
    ) -> int:
        ...

    @abstractmethod
    async def sum_fines(self, patron_id: Optional[str] = None) -> float:
        """Sum of fines frozen on returned loans."""

    @abstractmethod
    async def favorite_genres(self, patron_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def popular_books(self, limit: int = 5) -> List[Tuple[Book, int]]:
        ...

    # wishlists

    @abstractmethod
    async def add_to_wishlist(self, entry: WishlistEntry) -> WishlistEntry:
        ...

    @abstractmethod
    async def remove_from_wishlist(self, user_id: str, book_id: str) -> bool:
        ...

    @abstractmethod
    async def list_wishlist(self, user_id: str) -> List[WishlistEntry]:
        ...

    @abstractmethod
    async def in_wishlist(self, user_id: str, book_id: str) -> bool:
        ...


class MongoRepository(LibraryRepository):
    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self):
        logger.info("Ensuring MongoDB indexes")
        await self.db.books.create_index(
            "isbn", unique=True, partialFilterExpression={"isbn": {"$type": "string"}}
        )
        await self.db.books.create_index("isActive")
        await self.db.books.create_index("genre")
        await self.db.books.create_index(
            [("title", "text"), ("author", "text"), ("description", "text")]
        )
        await self.db.loans.create_index(
            [("patronId", ASCENDING), ("bookId", ASCENDING)],
            unique=True,
            partialFilterExpression={"returnedAt": {"$type": "null"}},
            name="one_open_loan_per_patron_and_book",
        )
        await self.db.loans.create_index([("patronId", ASCENDING), ("status", ASCENDING)])
        await self.db.loans.create_index("dueAt")
        await self.db.loans.create_index("borrowedAt")
        await self.db.users.create_index("email", unique=True)
        await self.db.wishlists.create_index(
            [("userId", ASCENDING), ("bookId", ASCENDING)], unique=True
        )

    @staticmethod
    def _document(model, *object_id_fields: str) -> Dict[str, Any]:
        document = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in model.model_dump(by_alias=True, exclude={"id"}).items()
        }
        for name in object_id_fields:
            document[name] = object_id(document[name])
        return document

    # books

    async def find_book(self, book_id: str) -> Optional[Book]:
        book = await self.db.books.find_one({"_id": object_id(book_id)})
        if book:
            return Book(**book)
        return None

    async def reserve_copy(self, book_id: str) -> Optional[Book]:
        book = await self.db.books.find_one_and_update(
            {"_id": object_id(book_id), "isActive": True, "availableCopies": {"$gt": 0}},
            {"$inc": {"availableCopies": -1}, "$set": {"updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if book:
            return Book(**book)
        return None

    async def release_copy(self, book_id: str) -> Optional[Book]:
        book = await self.db.books.find_one_and_update(
            {"_id": object_id(book_id)},
            [
                {
                    "$set": {
                        "availableCopies": {
                            "$min": [{"$add": ["$availableCopies", 1]}, "$totalCopies"]
                        },
                        "updatedAt": utcnow(),
                    }
                }
            ],
            return_document=ReturnDocument.AFTER,
        )
        if book:
            return Book(**book)
        return None

    async def set_total_copies(self, book_id: str, total: int) -> Optional[Book]:
        book = await self.db.books.find_one_and_update(
            {"_id": object_id(book_id)},
            [
                {
                    "$set": {
                        "totalCopies": total,
                        "availableCopies": {
                            "$min": [
                                {
                                    "$add": [
                                        "$availableCopies",
                                        {"$max": [{"$subtract": [total, "$totalCopies"]}, 0]},
                                    ]
                                },
                                total,
                            ]
                        },
                        "updatedAt": utcnow(),
                    }
                }
            ],
            return_document=ReturnDocument.AFTER,
        )
        if book:
            return Book(**book)
        return None

    async def create_book(self, book: Book) -> Book:
        try:
            result = await self.db.books.insert_one(self._document(book))
        except DuplicateKeyError:
            raise AlreadyExistsError("A book with this ISBN already exists")
        return book.model_copy(update={"id": str(result.inserted_id)})

    async def update_book(self, book_id: str, fields: Dict[str, Any]) -> Optional[Book]:
        update = camel_fields({**fields, "updated_at": utcnow()})
        try:
            book = await self.db.books.find_one_and_update(
                {"_id": object_id(book_id)},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise AlreadyExistsError("A book with this ISBN already exists")
        if book:
            return Book(**book)
        return None

    async def find_books(self, book_ids: List[str]) -> Dict[str, Book]:
        cursor = self.db.books.find({"_id": {"$in": [object_id(i) for i in set(book_ids)]}})
        return {str(book["_id"]): Book(**book) async for book in cursor}

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
        filters: Dict[str, Any] = {} if include_inactive else {"isActive": True}
        if genre:
            filters["genre"] = {"$regex": re.escape(genre), "$options": "i"}
        if published_year:
            filters["publishedYear"] = published_year
        if query:
            pattern = {"$regex": re.escape(query), "$options": "i"}
            filters["$or"] = [
                {"title": pattern},
                {"author": pattern},
                {"description": pattern},
                {"tags": pattern},
            ]

        direction = DESCENDING if sort_order == "desc" else ASCENDING
        cursor = self.db.books.find(filters).sort(sort_by, direction).skip(skip).limit(limit)
        books = [Book(**book) async for book in cursor]
        total = await self.db.books.count_documents(filters)
        return books, total

    async def count_open_loans_for_book(self, book_id: str) -> int:
        return await self.db.loans.count_documents(
            {"bookId": object_id(book_id), "returnedAt": None}
        )

    # users

    async def create_user(self, user: User) -> User:
        try:
            result = await self.db.users.insert_one(self._document(user))
        except DuplicateKeyError:
            raise AlreadyExistsError("User already exists with this email")
        return user.model_copy(update={"id": str(result.inserted_id)})

    async def find_user(self, user_id: str) -> Optional[User]:
        user = await self.db.users.find_one({"_id": object_id(user_id)})
        if user:
            return User(**user)
        return None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        user = await self.db.users.find_one({"email": email.lower()})
        if user:
            return User(**user)
        return None

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        update = camel_fields({**fields, "updated_at": utcnow()})
        try:
            user = await self.db.users.find_one_and_update(
                {"_id": object_id(user_id)},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise AlreadyExistsError("Email already in use by another account")
        if user:
            return User(**user)
        return None

    async def list_users(self, role=None, include_inactive=False, skip=0, limit=20):
        filters: Dict[str, Any] = {}
        if role:
            filters["role"] = Role(role).value
        if not include_inactive:
            filters["isActive"] = True
        cursor = self.db.users.find(filters).sort("createdAt", DESCENDING).skip(skip).limit(limit)
        users = [User(**user) async for user in cursor]
        total = await self.db.users.count_documents(filters)
        return users, total

    # loans

    async def find_open_loan(self, patron_id: str, book_id: str) -> Optional[Loan]:
        loan = await self.db.loans.find_one(
            {"patronId": object_id(patron_id), "bookId": object_id(book_id), "returnedAt": None}
        )
        if loan:
            return Loan(**loan)
        return None

    async def count_open_loans(self, patron_id: str) -> int:
        return await self.db.loans.count_documents(
            {"patronId": object_id(patron_id), "returnedAt": None}
        )

    async def open_loan_ids(self, patron_id: str) -> List[str]:
        cursor = self.db.loans.find(
            {"patronId": object_id(patron_id), "returnedAt": None}, {"_id": 1}
        ).sort("_id", ASCENDING)
        return [str(loan["_id"]) async for loan in cursor]

    async def create_loan(self, loan: Loan) -> Loan:
        try:
            result = await self.db.loans.insert_one(self._document(loan, "patronId", "bookId"))
        except DuplicateKeyError:
            raise AlreadyBorrowedError(loan.patron_id, loan.book_id)
        return loan.model_copy(update={"id": str(result.inserted_id)})

    async def find_loan(self, loan_id: str) -> Optional[Loan]:
        loan = await self.db.loans.find_one({"_id": object_id(loan_id)})
        if loan:
            return Loan(**loan)
        return None

    async def update_loan(self, loan: Loan, expected_version: int) -> Optional[Loan]:
        document = await self.db.loans.find_one_and_replace(
            {"_id": object_id(loan.id), "version": expected_version},
            self._document(loan, "patronId", "bookId"),
            return_document=ReturnDocument.AFTER,
        )
        if document:
            return Loan(**document)
        return None

    async def delete_loan(self, loan_id: str) -> bool:
        result = await self.db.loans.delete_one({"_id": object_id(loan_id)})
        return result.deleted_count > 0

    def _loan_filters(self, now, patron_id=None, status=None, open_only=False):
        filters: Dict[str, Any] = {}
        if patron_id:
            filters["patronId"] = object_id(patron_id)
        if status:
            filters.update(loan_status_filter(status, now))
        elif open_only:
            filters["returnedAt"] = None
        return filters

    async def list_loans(self, now, patron_id=None, status=None, open_only=False, skip=0, limit=None):
        filters = self._loan_filters(now, patron_id, status, open_only)
        cursor = self.db.loans.find(filters).sort("borrowedAt", DESCENDING).skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        loans = [Loan(**loan) async for loan in cursor]
        total = await self.db.loans.count_documents(filters)
        return loans, total

    async def count_loans(self, now, patron_id=None, status=None) -> int:
        return await self.db.loans.count_documents(self._loan_filters(now, patron_id, status))

    async def sum_fines(self, patron_id=None) -> float:
        match: Dict[str, Any] = {"returnedAt": {"$ne": None}}
        if patron_id:
            match["patronId"] = object_id(patron_id)
        cursor = self.db.loans.aggregate(
            [
                {"$match": match},
                {"$group": {"_id": None, "totalFines": {"$sum": "$fineAmount"}}},
            ]
        )
        async for row in cursor:
            return row["totalFines"]
        return 0

    async def favorite_genres(self, patron_id, limit=5):
        cursor = self.db.loans.aggregate(
            [
                {"$match": {"patronId": object_id(patron_id)}},
                {
                    "$lookup": {
                        "from": "books",
                        "localField": "bookId",
                        "foreignField": "_id",
                        "as": "bookInfo",
                    }
                },
                {"$unwind": "$bookInfo"},
                {"$group": {"_id": "$bookInfo.genre", "count": {"$sum": 1}}},
                {"$sort": {"count": -1}},
                {"$limit": limit},
            ]
        )
        return [{"genre": row["_id"] or "Unknown", "count": row["count"]} async for row in cursor]

    async def popular_books(self, limit=5):
        cursor = self.db.loans.aggregate(
            [
                {"$group": {"_id": "$bookId", "borrowCount": {"$sum": 1}}},
                {"$sort": {"borrowCount": -1}},
                {"$limit": limit},
            ]
        )
        counts = [(str(row["_id"]), row["borrowCount"]) async for row in cursor]
        books = await self.find_books([book_id for book_id, _ in counts])
        return [(books[book_id], count) for book_id, count in counts if book_id in books]

    # wishlists

    async def add_to_wishlist(self, entry: WishlistEntry) -> WishlistEntry:
        try:
            result = await self.db.wishlists.insert_one(self._document(entry, "userId", "bookId"))
        except DuplicateKeyError:
            raise AlreadyExistsError("Book already in wishlist")
        return entry.model_copy(update={"id": str(result.inserted_id)})

    async def remove_from_wishlist(self, user_id: str, book_id: str) -> bool:
        result = await self.db.wishlists.delete_one(
            {"userId": object_id(user_id), "bookId": object_id(book_id)}
        )
        return result.deleted_count > 0

    async def list_wishlist(self, user_id: str) -> List[WishlistEntry]:
        cursor = self.db.wishlists.find({"userId": object_id(user_id)}).sort(
            "createdAt", DESCENDING
        )
        return [WishlistEntry(**entry) async for entry in cursor]

    async def in_wishlist(self, user_id: str, book_id: str) -> bool:
        entry = await self.db.wishlists.find_one(
            {"userId": object_id(user_id), "bookId": object_id(book_id)}
        )
        return entry is not None
