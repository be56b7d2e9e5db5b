from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Stored as ObjectId in MongoDB, carried as str everywhere else.
PyObjectId = Annotated[str, BeforeValidator(str)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RENEWED = "renewed"
    OVERDUE = "overdue"
    RETURNED = "returned"


OPEN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.RENEWED, LoanStatus.OVERDUE)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Document(BaseModel):
    id: Optional[PyObjectId] = Field(default=None, alias="_id")

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class Location(BaseModel):
    shelf: Optional[str] = None
    section: Optional[str] = None


class Book(Document):
    title: str
    author: str
    isbn: Optional[str] = None
    genre: Optional[str] = None
    published_year: Optional[int] = None
    description: Optional[str] = None
    cover_image: Optional[str] = None
    location: Optional[Location] = None
    tags: List[str] = []
    total_copies: int = Field(default=1, ge=1)
    available_copies: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def clamp_available_copies(self):
        if self.available_copies is None or self.available_copies > self.total_copies:
            self.available_copies = self.total_copies
        return self

    @property
    def borrowed_copies(self) -> int:
        return self.total_copies - self.available_copies


class Loan(Document):
    patron_id: PyObjectId
    book_id: PyObjectId
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    renewed_count: int = Field(default=0, ge=0)
    status: LoanStatus = LoanStatus.ACTIVE
    fine_amount: float = Field(default=0, ge=0)
    fine_paid: bool = False
    notes: Optional[str] = Field(default=None, max_length=500)
    version: int = 0

    @field_validator("borrowed_at", "due_at", "returned_at")
    @classmethod
    def normalize_dates(cls, value):
        return as_utc(value)

    @property
    def is_open(self) -> bool:
        return self.returned_at is None


class User(Document):
    name: str
    email: str
    password_hash: str
    role: Role = Role.USER
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class WishlistEntry(Document):
    user_id: PyObjectId
    book_id: PyObjectId
    created_at: datetime = Field(default_factory=utcnow)
