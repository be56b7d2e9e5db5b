import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from circulation.errors import (
    BookNotFoundError,
    InvalidArgumentError,
    InvalidStateError,
    UserNotFoundError,
)
from circulation.ledger import InventoryLedger
from circulation.models import Book, Role, User, utcnow

from .auth import require_admin
from .config import settings
from .crud import LibraryRepository
from .dependencies import get_db, get_ledger
from .reports import loan_totals, present_loans
from .schemas import (
    AdminUserUpdate,
    BookCreate,
    BookPage,
    BookUpdate,
    DashboardStats,
    MessageResponse,
    Pagination,
    PopularBook,
    UserPage,
    UserSchema,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


async def ensure_no_open_loans_for_book(db: LibraryRepository, book_id: str):
    if await db.count_open_loans_for_book(book_id) > 0:
        raise InvalidStateError("Cannot deactivate book with active borrows")


async def ensure_no_open_loans_for_user(db: LibraryRepository, user_id: str):
    if await db.count_open_loans(user_id) > 0:
        raise InvalidStateError("Cannot deactivate user with active borrows")


@router.get("/dashboard/stats", response_model=DashboardStats)
async def dashboard_stats(
    admin: User = Depends(require_admin), db: LibraryRepository = Depends(get_db)
):
    now = utcnow()
    policy = settings.policy()
    totals = await loan_totals(db, now, policy)
    _, total_books = await db.list_books(limit=1)
    _, total_users = await db.list_users(role=Role.USER, limit=1)
    recent, _ = await db.list_loans(now, open_only=True, limit=10)
    popular = await db.popular_books(limit=5)

    return DashboardStats(
        total_books=total_books,
        total_users=total_users,
        active_borrowings=totals["active"],
        overdue_borrowings=totals["overdue"],
        total_fines=totals["fines"],
        recent_borrows=await present_loans(db, recent, now, policy),
        popular_books=[PopularBook(book=book, borrow_count=count) for book, count in popular],
    )


# Books


@router.get("/books", response_model=BookPage)
async def list_all_books(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    include_inactive: bool = Query(False, alias="includeInactive"),
    sort_by: Literal["title", "author", "genre", "publishedYear", "createdAt", "availableCopies"] = Query(
        "title", alias="sortBy"
    ),
    sort_order: Literal["asc", "desc"] = Query("asc", alias="sortOrder"),
    admin: User = Depends(require_admin),
    db: LibraryRepository = Depends(get_db),
):
    books, total = await db.list_books(
        include_inactive=include_inactive,
        sort_by=sort_by,
        sort_order=sort_order,
        skip=(page - 1) * limit,
        limit=limit,
    )
    return BookPage(books=books, pagination=Pagination.build(page, limit, total))


@router.post("/books", response_model=Book, status_code=status.HTTP_201_CREATED)
async def add_book(
    book: BookCreate,
    admin: User = Depends(require_admin),
    db: LibraryRepository = Depends(get_db),
):
    logger.info(f"Received request to add book: {book.title}")
    new_book = await db.create_book(Book(**book.model_dump()))
    logger.info(f"Book added successfully: {new_book.id}")
    return new_book


@router.put("/books/{book_id}", response_model=Book)
async def modify_book(
    book_id: str,
    book_update: BookUpdate,
    admin: User = Depends(require_admin),
    db: LibraryRepository = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
):
    book = await db.find_book(book_id)
    if not book:
        raise BookNotFoundError(book_id)

    fields = book_update.model_dump(exclude_unset=True)
    if fields.get("is_active") is False:
        await ensure_no_open_loans_for_book(db, book_id)
    total_copies = fields.pop("total_copies", None)
    if fields:
        book = await db.update_book(book_id, fields)
    if total_copies is not None:
        book = await ledger.set_total_copies(book_id, total_copies)

    logger.info(f"Book {book_id} updated")
    return book


@router.delete("/books/{book_id}", response_model=MessageResponse)
async def remove_book(
    book_id: str,
    admin: User = Depends(require_admin),
    db: LibraryRepository = Depends(get_db),
):
    book = await db.find_book(book_id)
    if not book:
        raise BookNotFoundError(book_id)

    await ensure_no_open_loans_for_book(db, book_id)

    await db.update_book(book_id, {"is_active": False})
    logger.info(f"Book {book_id} deactivated")
    return MessageResponse(message="Book deleted successfully")


# Users


@router.get("/users", response_model=UserPage)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Optional[Role] = None,
    include_inactive: bool = Query(False, alias="includeInactive"),
    admin: User = Depends(require_admin),
    db: LibraryRepository = Depends(get_db),
):
    users, total = await db.list_users(
        role=role, include_inactive=include_inactive, skip=(page - 1) * limit, limit=limit
    )
    return UserPage(
        users=[UserSchema.model_validate(user.model_dump()) for user in users],
        pagination=Pagination.build(page, limit, total),
    )


@router.put("/users/{user_id}", response_model=UserSchema)
async def modify_user(
    user_id: str,
    user_update: AdminUserUpdate,
    admin: User = Depends(require_admin),
    db: LibraryRepository = Depends(get_db),
):
    user = await db.find_user(user_id)
    if not user:
        raise UserNotFoundError(user_id)

    fields = user_update.model_dump(exclude_unset=True, exclude_none=True)
    if fields.get("is_active") is False:
        if user.id == admin.id:
            raise InvalidArgumentError("Cannot deactivate your own account")
        await ensure_no_open_loans_for_user(db, user.id)

    if fields:
        user = await db.update_user(user_id, fields)
        logger.info(f"Admin {admin.id} updated user {user_id}: {fields}")
    return UserSchema.model_validate(user.model_dump())


@router.delete("/users/{user_id}", response_model=MessageResponse)
async def remove_user(
    user_id: str,
    admin: User = Depends(require_admin),
    db: LibraryRepository = Depends(get_db),
):
    user = await db.find_user(user_id)
    if not user:
        raise UserNotFoundError(user_id)

    if user.id == admin.id:
        raise InvalidArgumentError("Cannot delete your own account")

    await ensure_no_open_loans_for_user(db, user.id)

    await db.update_user(user_id, {"is_active": False})
    logger.info(f"User {user_id} deactivated by admin {admin.id}")
    return MessageResponse(message="User deleted successfully")
