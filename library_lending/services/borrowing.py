"""Borrowing workflow: the only code allowed to move a book's copy counters.

Every counter change is a single conditional ``UPDATE`` evaluated by the
database against the current row, issued inside one transaction together
with the borrowing-record write it belongs to. Nothing here reads a counter
and writes back a value computed in Python.
"""
import logging
from datetime import timedelta

from sqlalchemy import select, update, delete, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from library_lending.core.config import settings, COPY_REDUCTION_POLICIES
from library_lending.core.database import unit_of_work
from library_lending.core.exceptions import (Unauthenticated, Forbidden, NotFound, Unavailable,
                                             AlreadyBorrowed, InvalidState, Conflict,
                                             InvalidArgument, StoreError)
from library_lending.models.models import Book, Borrowing, BorrowingStatus, Member, utcnow

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


class BorrowingService:
    def __init__(self, db: Session, policy=None, loan_days=None, clock=utcnow):
        self.db = db
        self.policy = (policy or settings.copy_reduction_policy).lower()
        if self.policy not in COPY_REDUCTION_POLICIES:
            raise ValueError(f"Unknown copy reduction policy {self.policy!r}")
        self.loan_days = loan_days if loan_days is not None else settings.loan_days
        self.clock = clock

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def is_borrowed_by(self, book_id: int, member_id: int) -> bool:
        return self._open_loans(Borrowing.book_id == book_id, Borrowing.member_id == member_id) > 0

    def active_borrowings_count(self, book_id: int) -> int:
        return self._open_loans(Borrowing.book_id == book_id)

    def current_borrowings(self, member_id: int):
        """Open loans of a member, soonest due first."""
        stmt = (select(Borrowing)
                .options(selectinload(Borrowing.book))
                .where(Borrowing.member_id == member_id,
                       Borrowing.status == BorrowingStatus.BORROWED)
                .order_by(Borrowing.due_date.asc(), Borrowing.id.asc()))
        return self.db.scalars(stmt).all()

    def history(self, member_id: int):
        """Every loan of a member, most recent first."""
        stmt = (select(Borrowing)
                .options(selectinload(Borrowing.book))
                .where(Borrowing.member_id == member_id)
                .order_by(Borrowing.borrowed_date.desc(), Borrowing.id.desc()))
        return self.db.scalars(stmt).all()

    def get_borrowing(self, borrowing_id: int) -> Borrowing:
        borrowing = self.db.get(Borrowing, borrowing_id)
        if borrowing is None:
            raise NotFound(f"Borrowing {borrowing_id} not found")
        return borrowing

    # ------------------------------------------------------------------
    # state transitions
    # ------------------------------------------------------------------
    def borrow(self, book_id: int, member_id) -> Borrowing:
        """Lend one copy of ``book_id`` to ``member_id``.

        Preconditions are checked in order: authenticated member, existing
        book, a free copy, no open loan of the same book by the same member.
        The decrement and the insert commit together or not at all.
        """
        with unit_of_work(self.db):
            if member_id is None or self.db.get(Member, member_id) is None:
                raise Unauthenticated()
            book = self.db.get(Book, book_id)
            if book is None:
                raise NotFound(f"Book {book_id} not found")
            if book.available_copies <= 0:
                logger.info("Borrow refused, book %s has no free copy", book_id)
                raise Unavailable()
            if self.is_borrowed_by(book_id, member_id):
                logger.info("Borrow refused, member %s already holds book %s", member_id, book_id)
                raise AlreadyBorrowed()

            taken = self.db.execute(
                update(Book)
                .where(Book.id == book_id, Book.available_copies > 0)
                .values(available_copies=Book.available_copies - 1),
                execution_options=_NO_SYNC,
            )
            if taken.rowcount != 1:
                # lost the race for the last copy
                logger.info("Borrow refused, last copy of book %s taken concurrently", book_id)
                raise Unavailable()

            now = self.clock()
            borrowing = Borrowing(
                book_id=book_id,
                member_id=member_id,
                borrowed_date=now,
                due_date=now + timedelta(days=self.loan_days),
                status=BorrowingStatus.BORROWED,
            )
            self.db.add(borrowing)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise AlreadyBorrowed() from exc
            self._verify_copies(book_id)

        logger.info("Member %s borrowed book %s (borrowing %s, due %s)",
                    member_id, book_id, borrowing.id, borrowing.due_date.isoformat())
        return borrowing

    def return_book(self, borrowing_id: int, member_id=None) -> Borrowing:
        """Close an open loan and put the copy back on the shelf.

        When ``member_id`` is given the loan must belong to that member.
        """
        with unit_of_work(self.db):
            borrowing = self.get_borrowing(borrowing_id)
            if member_id is not None and borrowing.member_id != member_id:
                raise Forbidden("This borrowing belongs to another member")
            if borrowing.status != BorrowingStatus.BORROWED:
                raise InvalidState(f"Borrowing {borrowing_id} is already returned")

            closed = self.db.execute(
                update(Borrowing)
                .where(Borrowing.id == borrowing_id,
                       Borrowing.status == BorrowingStatus.BORROWED)
                .values(status=BorrowingStatus.RETURNED, returned_date=self.clock()),
                execution_options=_NO_SYNC,
            )
            if closed.rowcount != 1:
                raise InvalidState(f"Borrowing {borrowing_id} is already returned")

            book_id = borrowing.book_id
            self.db.execute(
                update(Book).where(Book.id == book_id).values(**self._restock_values()),
                execution_options=_NO_SYNC,
            )
            self._verify_copies(book_id)

        self.db.refresh(borrowing)
        logger.info("Borrowing %s returned, book %s restocked", borrowing_id, book_id)
        return borrowing

    def update_book_copies(self, book_id: int, new_total_copies: int) -> Book:
        """Set a book's owned copies and re-derive its free copies from the delta.

        What happens when more copies are on loan than the new total allows
        depends on the copy reduction policy: ``clamp`` floors the free count
        at zero, ``reject`` raises :class:`Conflict`, ``deficit`` floors at
        zero and remembers the shortfall in ``copy_deficit``.
        """
        with unit_of_work(self.db):
            book = self.apply_copy_change(book_id, new_total_copies)

        logger.info("Book %s copies set to %s (available %s, deficit %s)",
                    book_id, book.total_copies, book.available_copies, book.copy_deficit)
        return book

    def apply_copy_change(self, book_id: int, new_total_copies: int) -> Book:
        """Copy-count change inside the caller's transaction; never commits."""
        if new_total_copies is None or int(new_total_copies) < 1:
            raise InvalidArgument("total_copies must be >= 1")
        new_total_copies = int(new_total_copies)

        if self.db.get(Book, book_id) is None:
            raise NotFound(f"Book {book_id} not found")

        effective = (Book.available_copies - Book.copy_deficit
                     + (new_total_copies - Book.total_copies))
        values = {
            "total_copies": new_total_copies,
            "available_copies": case((effective > 0, effective), else_=0),
        }
        if self.policy == "deficit":
            values["copy_deficit"] = case((effective < 0, -effective), else_=0)
        else:
            values["copy_deficit"] = 0

        stmt = update(Book).where(Book.id == book_id)
        if self.policy == "reject":
            stmt = stmt.where(effective >= 0)
        result = self.db.execute(stmt.values(**values), execution_options=_NO_SYNC)
        if result.rowcount != 1:
            if self.policy == "reject":
                logger.warning("Copy reduction of book %s to %s rejected, copies on loan exceed it",
                               book_id, new_total_copies)
                raise Conflict("Cannot reduce copies below the number currently borrowed")
            raise NotFound(f"Book {book_id} not found")
        return self._verify_copies(book_id)

    def delete_book(self, book_id: int) -> None:
        """Remove a book that nobody currently has on loan, with its closed loans."""
        with unit_of_work(self.db):
            book = self.db.scalars(
                select(Book).where(Book.id == book_id).with_for_update()
            ).first()
            if book is None:
                raise NotFound(f"Book {book_id} not found")
            if self.active_borrowings_count(book_id) > 0:
                logger.info("Delete of book %s refused, active borrowings exist", book_id)
                raise Conflict("Cannot delete book: active borrowings exist")
            self.db.execute(delete(Borrowing).where(Borrowing.book_id == book_id), execution_options=_NO_SYNC)
            self.db.execute(delete(Book).where(Book.id == book_id), execution_options=_NO_SYNC)
            self.db.expunge(book)
        logger.info("Deleted book id=%s", book_id)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _open_loans(self, *criteria) -> int:
        stmt = (select(func.count(Borrowing.id))
                .where(Borrowing.status == BorrowingStatus.BORROWED, *criteria))
        return self.db.scalar(stmt)

    @staticmethod
    def _restock_values():
        # a returned copy pays down any deficit before it becomes free again
        effective = Book.available_copies - Book.copy_deficit + 1
        return {
            "available_copies": case(
                (effective > Book.total_copies, Book.total_copies),
                (effective > 0, effective),
                else_=0,
            ),
            "copy_deficit": case((effective < 0, -effective), else_=0),
        }

    def _verify_copies(self, book_id: int) -> Book:
        book = self.db.get(Book, book_id, populate_existing=True)
        if book is None:
            raise NotFound(f"Book {book_id} not found")
        if not (0 <= book.available_copies <= book.total_copies) or book.copy_deficit < 0:
            logger.error("Book %s copy counters out of range: %r", book_id, book)
            raise StoreError(f"Book {book_id} copy counters are inconsistent")
        return book
