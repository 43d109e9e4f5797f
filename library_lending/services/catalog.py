import logging

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library_lending.core.database import unit_of_work
from library_lending.core.exceptions import Conflict, NotFound, InvalidArgument
from library_lending.models.models import Book, Borrowing, BorrowingStatus
from library_lending.services.borrowing import BorrowingService

logger = logging.getLogger(__name__)

DESCRIPTIVE_FIELDS = ("title", "author", "isbn", "category", "description", "cover_image_url")
REQUIRED_FIELDS = ("title", "author")
SEARCH_FIELDS = ("all", "title", "author", "isbn", "category")


class CatalogService:
    def __init__(self, db: Session, borrowing: BorrowingService = None):
        self.db = db
        self.borrowing = borrowing or BorrowingService(db)

    def create_book(self, data: dict) -> Book:
        isbn = data.get("isbn") or None
        with unit_of_work(self.db):
            if isbn and self._isbn_taken(isbn):
                raise Conflict("ISBN already exists")
            total = data.get("total_copies", 1)
            book = Book(
                title=data["title"].strip(),
                author=data["author"].strip(),
                isbn=isbn,
                category=data.get("category"),
                description=data.get("description"),
                cover_image_url=data.get("cover_image_url"),
                total_copies=total,
                available_copies=total,
                copy_deficit=0,
            )
            self.db.add(book)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise Conflict("ISBN already exists") from exc
        logger.info("Created book id=%s title=%s", book.id, book.title)
        return book

    def get_book(self, book_id: int) -> Book:
        book = self.db.get(Book, book_id)
        if book is None:
            raise NotFound(f"Book {book_id} not found")
        return book

    def update_book_details(self, book_id: int, data: dict) -> Book:
        """Edit descriptive fields and, when given, ``total_copies``.

        Both changes commit together; a refused copy change leaves the
        descriptive fields untouched too.
        """
        data = dict(data)
        new_total = data.pop("total_copies", None)
        fields = {k: v for k, v in data.items() if k in DESCRIPTIVE_FIELDS}
        for k in REQUIRED_FIELDS:
            if k in fields and not (fields[k] or "").strip():
                raise InvalidArgument(f"{k} must not be empty")

        with unit_of_work(self.db):
            book = self.get_book(book_id)
            if fields:
                isbn = fields.get("isbn")
                if isbn and isbn != book.isbn and self._isbn_taken(isbn):
                    raise Conflict("ISBN already exists")
                for k, v in fields.items():
                    setattr(book, k, v.strip() if k in REQUIRED_FIELDS else v)
                try:
                    # written before the copy UPDATE re-reads the row
                    self.db.flush()
                except IntegrityError as exc:
                    raise Conflict("ISBN already exists") from exc
            if new_total is not None:
                book = self.borrowing.apply_copy_change(book_id, new_total)

        logger.info("Updated book id=%s fields=%s copies=%s", book_id, sorted(fields), new_total)
        return book

    def list_books(self, q=None, category=None, field="all", skip=0, limit=20):
        """Search the catalog; ``field`` limits ``q`` to one column or ``all`` of them."""
        field = field or "all"
        if field not in SEARCH_FIELDS:
            raise InvalidArgument(f"field must be one of {', '.join(SEARCH_FIELDS)}")
        query = select(Book)
        if q:
            like_q = f"%{q}%"
            if field == "all":
                query = query.where(Book.title.ilike(like_q) | Book.author.ilike(like_q)
                                    | Book.isbn.ilike(like_q) | Book.description.ilike(like_q))
            else:
                query = query.where(getattr(Book, field).ilike(like_q))
        if category:
            query = query.where(Book.category == category)
        query = query.order_by(Book.title, Book.id).offset(skip).limit(limit)
        return self.db.scalars(query).all()

    def categories(self):
        query = (select(Book.category).distinct()
                 .where(Book.category.is_not(None), Book.category != "")
                 .order_by(Book.category))
        return list(self.db.scalars(query).all())

    def member_stats(self, member_id: int) -> dict:
        total_books = self.db.scalar(select(func.count(Book.id)))
        currently_borrowed = self.db.scalar(
            select(func.count(Borrowing.id)).where(Borrowing.member_id == member_id,
                                                   Borrowing.status == BorrowingStatus.BORROWED))
        total_borrowings = self.db.scalar(
            select(func.count(Borrowing.id)).where(Borrowing.member_id == member_id))
        return {
            "total_books": total_books,
            "currently_borrowed": currently_borrowed,
            "total_borrowings": total_borrowings,
        }

    def _isbn_taken(self, isbn) -> bool:
        return self.db.scalars(select(Book.id).where(Book.isbn == isbn)).first() is not None
