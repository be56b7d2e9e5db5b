import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from circulation.models import Book, Loan, LoanStatus, Location, PyObjectId, Role

ISBN_PATTERN = r"^(?:\d{9}[\dX]|\d{13})$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


def check_published_year(value: Optional[int]) -> Optional[int]:
    if value is not None and value > datetime.now().year + 1:
        raise ValueError("Published year cannot be in the future")
    return value


class BookBase(CamelModel):
    title: str = Field(min_length=1, max_length=200)
    author: str = Field(min_length=1, max_length=100)
    isbn: Optional[str] = Field(default=None, pattern=ISBN_PATTERN)
    genre: Optional[str] = Field(default=None, max_length=50)
    published_year: Optional[int] = Field(default=None, ge=1000)
    description: Optional[str] = Field(default=None, max_length=2000)
    cover_image: Optional[str] = None
    location: Optional[Location] = None
    tags: List[str] = []

    @field_validator("published_year")
    @classmethod
    def check_year(cls, value):
        return check_published_year(value)


class BookCreate(BookBase):
    total_copies: int = Field(default=1, ge=1)
    available_copies: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_copies(self):
        if self.available_copies is not None and self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self


class BookUpdate(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    author: Optional[str] = Field(default=None, min_length=1, max_length=100)
    isbn: Optional[str] = Field(default=None, pattern=ISBN_PATTERN)
    genre: Optional[str] = Field(default=None, max_length=50)
    published_year: Optional[int] = Field(default=None, ge=1000)
    description: Optional[str] = Field(default=None, max_length=2000)
    cover_image: Optional[str] = None
    location: Optional[Location] = None
    tags: Optional[List[str]] = None
    total_copies: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None

    @field_validator("published_year")
    @classmethod
    def check_year(cls, value):
        return check_published_year(value)


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_records: int
    limit: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_records=total,
            limit=limit,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


class BookPage(CamelModel):
    success: bool = True
    books: List[Book]
    pagination: Pagination
    search_query: Optional[str] = None


class LoanDetail(Loan):
    book: Optional[Book] = None


class LoanPage(CamelModel):
    success: bool = True
    data: List[LoanDetail]
    pagination: Pagination


class LoanList(CamelModel):
    success: bool = True
    data: List[LoanDetail]
    count: int


class BorrowResponse(CamelModel):
    loan_id: str
    borrowed_at: datetime
    due_at: datetime
    status: LoanStatus


class ReturnResponse(CamelModel):
    loan_id: str
    returned_at: datetime
    fine_amount: float
    status: LoanStatus


class RenewResponse(CamelModel):
    loan_id: str
    due_at: datetime
    renewed_count: int
    status: LoanStatus


class UserCreate(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value):
        return value.strip().lower()


class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value):
        return value.strip().lower() if value else value


class AdminUserUpdate(CamelModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class UserSchema(CamelModel):
    id: PyObjectId = Field(alias="_id")
    name: str
    email: str
    role: Role
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


class UserPage(CamelModel):
    success: bool = True
    users: List[UserSchema]
    pagination: Pagination


class GenreCount(CamelModel):
    genre: str
    count: int


class UserStats(CamelModel):
    total_borrows: int
    active_borrows: int
    overdue_borrows: int
    returned_books: int
    total_fines: float
    favorite_genres: List[GenreCount]


class PopularBook(CamelModel):
    book: Book
    borrow_count: int


class DashboardStats(CamelModel):
    total_books: int
    total_users: int
    active_borrowings: int
    overdue_borrowings: int
    total_fines: float
    recent_borrows: List[LoanDetail]
    popular_books: List[PopularBook]


class WishlistItem(CamelModel):
    id: PyObjectId = Field(alias="_id")
    book_id: PyObjectId
    created_at: datetime
    book: Optional[Book] = None


class WishlistResponse(CamelModel):
    wishlist: List[WishlistItem]
    count: int


class MessageResponse(CamelModel):
    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None
