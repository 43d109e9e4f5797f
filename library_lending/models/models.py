import enum
from datetime import datetime, timezone

from sqlalchemy import (Column, Integer, String, Text, DateTime, Enum, ForeignKey, Index,
                        CheckConstraint, text)
from sqlalchemy.orm import relationship

from library_lending.core.database import Base


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BorrowingStatus(str, enum.Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"


class MemberRole(str, enum.Enum):
    MEMBER = "member"
    ADMIN = "admin"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_books_total_non_negative"),
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_books_available_le_total"),
        CheckConstraint("copy_deficit >= 0", name="ck_books_deficit_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, index=True, nullable=True)
    category = Column(String, nullable=True, index=True)
    description = Column(Text, nullable=True)
    cover_image_url = Column(String, nullable=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1, index=True)
    copy_deficit = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime, default=utcnow)

    borrowings = relationship("Borrowing", back_populates="book")

    def __repr__(self):
        return f"<Book id={self.id} {self.available_copies}/{self.total_copies}>"


Index('ix_books_title_author', Book.title, Book.author)


class Member(Base):
    __tablename__ = "members"
    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    phone = Column(String(32), nullable=True)
    address = Column(Text, nullable=True)
    membership_type = Column(String(20), nullable=False, default="standard", server_default="standard")
    role = Column(Enum(MemberRole, native_enum=False, values_callable=_enum_values, length=20),
                  nullable=False, default=MemberRole.MEMBER)
    api_token = Column(String(64), unique=True, nullable=False, index=True)
    joined_at = Column(DateTime, default=utcnow)

    borrowings = relationship("Borrowing", back_populates="member")

    @property
    def is_admin(self):
        return self.role == MemberRole.ADMIN


class Borrowing(Base):
    __tablename__ = "borrowings"
    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    borrowed_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    returned_date = Column(DateTime, nullable=True)
    status = Column(Enum(BorrowingStatus, native_enum=False, values_callable=_enum_values, length=20),
                    nullable=False, default=BorrowingStatus.BORROWED, index=True)

    book = relationship("Book", back_populates="borrowings")
    member = relationship("Member", back_populates="borrowings")

    @property
    def is_overdue(self):
        return self.status == BorrowingStatus.BORROWED and self.due_date < utcnow()

    def __repr__(self):
        return f"<Borrowing id={self.id} book={self.book_id} member={self.member_id} {self.status.value}>"


# one open loan per member and book
Index(
    'uq_borrowings_open_loan',
    Borrowing.book_id,
    Borrowing.member_id,
    unique=True,
    sqlite_where=text("status = 'borrowed'"),
    postgresql_where=text("status = 'borrowed'"),
)
