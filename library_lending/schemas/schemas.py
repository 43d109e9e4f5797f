from pydantic import BaseModel, ConfigDict, Field, constr, field_validator
from datetime import datetime
from typing import Optional

from library_lending.models.models import BorrowingStatus, MemberRole


class BookBase(BaseModel):
    title: constr(strip_whitespace=True, min_length=1)
    author: constr(strip_whitespace=True, min_length=1)
    isbn: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None


class BookCreate(BookBase):
    total_copies: int = Field(default=1, ge=1)


class BookUpdate(BaseModel):
    title: Optional[constr(strip_whitespace=True, min_length=1)] = None
    author: Optional[constr(strip_whitespace=True, min_length=1)] = None
    isbn: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    total_copies: Optional[int] = Field(default=None, ge=1)

    @field_validator('title', 'author')
    @classmethod
    def reject_null(cls, v):
        # omit the key to leave it unchanged; null would blank a required column
        if v is None:
            raise ValueError('must not be null')
        return v


class CopiesUpdate(BaseModel):
    total_copies: int

    @field_validator('total_copies')
    @classmethod
    def ensure_at_least_one_copy(cls, v):
        if v < 1:
            raise ValueError('total_copies must be >= 1')
        return v


class BookOut(BookBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    total_copies: int
    available_copies: int
    copy_deficit: int = 0
    created_at: datetime


class BookDetail(BookOut):
    borrowed_by_me: Optional[bool] = None


class MemberCreate(BaseModel):
    full_name: constr(strip_whitespace=True, min_length=1)
    email: constr(strip_whitespace=True, min_length=5)


class MemberOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    membership_type: str
    role: MemberRole
    joined_at: datetime


class MemberProfileUpdate(BaseModel):
    full_name: Optional[constr(strip_whitespace=True, min_length=1)] = None
    phone: Optional[constr(strip_whitespace=True, max_length=32)] = None
    address: Optional[str] = None

    @field_validator('full_name')
    @classmethod
    def reject_null_name(cls, v):
        if v is None:
            raise ValueError('must not be null')
        return v


class MemberRegistered(MemberOut):
    api_token: str


class BorrowingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: int
    member_id: int
    borrowed_date: datetime
    due_date: datetime
    returned_date: Optional[datetime] = None
    status: BorrowingStatus
    is_overdue: bool


class BorrowingWithBook(BorrowingOut):
    book: BookOut


class MemberStats(BaseModel):
    total_books: int
    currently_borrowed: int
    total_borrowings: int
