import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Query, status
from fastapi.middleware.cors import CORSMiddleware

from circulation.errors import AlreadyExistsError, BookNotFoundError, NotFoundError
from circulation.loans import LoanService
from circulation.models import Book, LoanStatus, User, WishlistEntry, utcnow
from exceptions.exceptions import add_exception_handlers

from .admin import router as admin_router
from .auth import get_current_user, hash_password
from .config import settings
from .crud import LibraryRepository, MongoRepository
from .dependencies import get_db, get_loan_service
from .memory import MemoryRepository
from .reports import loan_totals, present_loans
from .schemas import (
    BookPage,
    BorrowResponse,
    LoanList,
    LoanPage,
    MessageResponse,
    Pagination,
    ProfileUpdate,
    RenewResponse,
    ReturnResponse,
    UserCreate,
    UserSchema,
    UserStats,
    WishlistItem,
    WishlistResponse,
)
from .storage import close_db_connection, get_database, init_db

# Set up logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

BookSortField = Literal["title", "author", "genre", "publishedYear", "createdAt", "availableCopies"]
SortOrder = Literal["asc", "desc"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        if settings.storage_backend == "memory":
            logger.info("Using in-memory storage")
            app.state.repository = MemoryRepository()
        else:
            await init_db()
            app.state.repository = MongoRepository(get_database())
            await app.state.repository.ensure_indexes()
    yield
    if not app.state.testing and settings.storage_backend != "memory":
        await close_db_connection()


app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
    description="Catalog, circulation and admin endpoints for the library",
    version=settings.app_version,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
add_exception_handlers(app)
app.include_router(admin_router)


def user_schema(user: User) -> UserSchema:
    return UserSchema.model_validate(user.model_dump())


@app.get("/health")
async def health():
    return {"status": "ok", "storage": settings.storage_backend}


# Auth


@app.post("/api/auth/register", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
async def register(user: UserCreate, db: LibraryRepository = Depends(get_db)):
    if await db.find_user_by_email(user.email):
        raise AlreadyExistsError("User already exists with this email")

    created = await db.create_user(
        User(name=user.name, email=user.email, password_hash=hash_password(user.password))
    )
    logger.info(f"Registered user {created.id} ({created.email})")
    return user_schema(created)


@app.get("/api/auth/me", response_model=UserSchema)
async def me(user: User = Depends(get_current_user)):
    return user_schema(user)


# Books


@app.get("/api/books", response_model=BookPage)
async def list_books(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=50),
    genre: Optional[str] = None,
    published_year: Optional[int] = Query(None, ge=1000, alias="publishedYear"),
    sort_by: BookSortField = Query("title", alias="sortBy"),
    sort_order: SortOrder = Query("asc", alias="sortOrder"),
    db: LibraryRepository = Depends(get_db),
):
    books, total = await db.list_books(
        genre=genre,
        published_year=published_year,
        sort_by=sort_by,
        sort_order=sort_order,
        skip=(page - 1) * limit,
        limit=limit,
    )
    return BookPage(books=books, pagination=Pagination.build(page, limit, total))


@app.get("/api/books/search", response_model=BookPage)
async def search_books(
    q: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=50),
    genre: Optional[str] = None,
    published_year: Optional[int] = Query(None, ge=1000, alias="publishedYear"),
    sort_by: BookSortField = Query("title", alias="sortBy"),
    sort_order: SortOrder = Query("asc", alias="sortOrder"),
    db: LibraryRepository = Depends(get_db),
):
    books, total = await db.list_books(
        query=q,
        genre=genre,
        published_year=published_year,
        sort_by=sort_by,
        sort_order=sort_order,
        skip=(page - 1) * limit,
        limit=limit,
    )
    return BookPage(
        books=books, pagination=Pagination.build(page, limit, total), search_query=q
    )


@app.get("/api/books/{book_id}", response_model=Book)
async def read_book(book_id: str, db: LibraryRepository = Depends(get_db)):
    book = await db.find_book(book_id)
    if not book or not book.is_active:
        raise BookNotFoundError(book_id)
    return book


@app.post(
    "/api/books/{book_id}/borrow",
    response_model=BorrowResponse,
    status_code=status.HTTP_201_CREATED,
)
async def borrow_book(
    book_id: str,
    user: User = Depends(get_current_user),
    loans: LoanService = Depends(get_loan_service),
):
    loan = await loans.open_loan(user.id, book_id)
    return BorrowResponse(
        loan_id=loan.id, borrowed_at=loan.borrowed_at, due_at=loan.due_at, status=loan.status
    )


@app.post("/api/books/{book_id}/return", response_model=ReturnResponse)
async def return_book(
    book_id: str,
    user: User = Depends(get_current_user),
    db: LibraryRepository = Depends(get_db),
    loans: LoanService = Depends(get_loan_service),
):
    open_loan = await db.find_open_loan(user.id, book_id)
    if open_loan is None:
        raise NotFoundError("No active borrow record found for this book")

    loan = await loans.close_loan(open_loan.id)
    return ReturnResponse(
        loan_id=loan.id,
        returned_at=loan.returned_at,
        fine_amount=loan.fine_amount,
        status=loan.status,
    )


# Patron account


@app.get("/api/user/profile", response_model=UserSchema)
async def read_profile(user: User = Depends(get_current_user)):
    return user_schema(user)


@app.put("/api/user/profile", response_model=UserSchema)
async def update_profile(
    profile: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: LibraryRepository = Depends(get_db),
):
    fields = profile.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        return user_schema(user)

    updated = await db.update_user(user.id, fields)
    logger.info(f"User {user.id} updated profile fields {sorted(fields)}")
    return user_schema(updated)


@app.get("/api/user/borrow-history", response_model=LoanPage)
async def borrow_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    loan_status: Optional[LoanStatus] = Query(None, alias="status"),
    user: User = Depends(get_current_user),
    db: LibraryRepository = Depends(get_db),
):
    now = utcnow()
    loans, total = await db.list_loans(
        now, patron_id=user.id, status=loan_status, skip=(page - 1) * limit, limit=limit
    )
    return LoanPage(
        data=await present_loans(db, loans, now, settings.policy()),
        pagination=Pagination.build(page, limit, total),
    )


@app.get("/api/user/active-borrows", response_model=LoanList)
async def active_borrows(
    user: User = Depends(get_current_user), db: LibraryRepository = Depends(get_db)
):
    now = utcnow()
    loans, total = await db.list_loans(now, patron_id=user.id, open_only=True)
    return LoanList(data=await present_loans(db, loans, now, settings.policy()), count=total)


@app.post("/api/user/renew/{loan_id}", response_model=RenewResponse)
async def renew_loan(
    loan_id: str,
    user: User = Depends(get_current_user),
    loans: LoanService = Depends(get_loan_service),
):
    loan = await loans.renew(loan_id, patron_id=user.id)
    return RenewResponse(
        loan_id=loan.id, due_at=loan.due_at, renewed_count=loan.renewed_count, status=loan.status
    )


@app.get("/api/user/stats", response_model=UserStats)
async def user_stats(
    user: User = Depends(get_current_user), db: LibraryRepository = Depends(get_db)
):
    totals = await loan_totals(db, utcnow(), settings.policy(), patron_id=user.id)
    return UserStats(
        total_borrows=totals["total"],
        active_borrows=totals["active"],
        overdue_borrows=totals["overdue"],
        returned_books=totals["returned"],
        total_fines=totals["fines"],
        favorite_genres=await db.favorite_genres(user.id),
    )


# Wishlist


@app.get("/api/wishlist", response_model=WishlistResponse)
async def read_wishlist(
    user: User = Depends(get_current_user), db: LibraryRepository = Depends(get_db)
):
    entries = await db.list_wishlist(user.id)
    books = await db.find_books([entry.book_id for entry in entries])
    wishlist = [
        WishlistItem(**entry.model_dump(), book=books.get(entry.book_id)) for entry in entries
    ]
    return WishlistResponse(wishlist=wishlist, count=len(wishlist))


@app.post("/api/wishlist/{book_id}", response_model=MessageResponse)
async def add_to_wishlist(
    book_id: str,
    user: User = Depends(get_current_user),
    db: LibraryRepository = Depends(get_db),
):
    book = await db.find_book(book_id)
    if not book or not book.is_active:
        raise BookNotFoundError(book_id)

    entry = await db.add_to_wishlist(WishlistEntry(user_id=user.id, book_id=book.id))
    return MessageResponse(message="Book added to wishlist", data={"id": entry.id})


@app.delete("/api/wishlist/{book_id}", response_model=MessageResponse)
async def remove_from_wishlist(
    book_id: str,
    user: User = Depends(get_current_user),
    db: LibraryRepository = Depends(get_db),
):
    if not await db.remove_from_wishlist(user.id, book_id):
        raise NotFoundError("Book not in wishlist")
    return MessageResponse(message="Book removed from wishlist")


@app.get("/api/wishlist/check/{book_id}", response_model=MessageResponse)
async def check_wishlist(
    book_id: str,
    user: User = Depends(get_current_user),
    db: LibraryRepository = Depends(get_db),
):
    in_wishlist = await db.in_wishlist(user.id, book_id)
    return MessageResponse(message="Check completed", data={"inWishlist": in_wishlist})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
