import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, func, update, Update
from sqlalchemy.exc import IntegrityError, OperationalError

from library_lending.core.exceptions import (Unauthenticated, Forbidden, NotFound, Unavailable,
                                             AlreadyBorrowed, InvalidState, Conflict,
                                             InvalidArgument, StoreError, LendingError)
from library_lending.models.models import Book, Borrowing, BorrowingStatus
from library_lending.services.borrowing import BorrowingService
from library_lending.services.catalog import CatalogService
from library_lending.services.members import MemberService

NOW = datetime(2026, 3, 1, 10, 30)


def clock():
    return NOW


def new_book(db, total_copies=3, title="Dune"):
    return CatalogService(db).create_book({"title": title, "author": "Frank Herbert",
                                           "total_copies": total_copies}).id


def new_member(db, name="Alice"):
    return MemberService(db).register(name, f"{name.lower()}@example.com").id


def counters(db, book_id):
    book = db.get(Book, book_id, populate_existing=True)
    return book.total_copies, book.available_copies, book.copy_deficit


def open_loans(db, book_id):
    return db.scalar(select(func.count(Borrowing.id)).where(
        Borrowing.book_id == book_id, Borrowing.status == BorrowingStatus.BORROWED))


@pytest.fixture
def service(db):
    return BorrowingService(db, policy="clamp", loan_days=14, clock=clock)


def test_borrow_twice_then_return(db, service):
    book_id = new_book(db, total_copies=3)
    alice = new_member(db)

    borrowing = service.borrow(book_id, alice)
    assert borrowing.status == BorrowingStatus.BORROWED
    assert borrowing.borrowed_date == NOW
    assert borrowing.due_date == NOW + timedelta(days=14)
    assert borrowing.returned_date is None
    assert counters(db, book_id)[:2] == (3, 2)

    with pytest.raises(AlreadyBorrowed):
        service.borrow(book_id, alice)
    assert counters(db, book_id)[:2] == (3, 2)

    returned = service.return_book(borrowing.id)
    assert returned.status == BorrowingStatus.RETURNED
    assert returned.returned_date == NOW
    assert counters(db, book_id)[:2] == (3, 3)


def test_borrow_requires_known_member(db, service):
    book_id = new_book(db)
    with pytest.raises(Unauthenticated):
        service.borrow(book_id, None)
    with pytest.raises(Unauthenticated):
        service.borrow(book_id, 9999)
    assert counters(db, book_id)[1] == 3


def test_borrow_unknown_book(db, service):
    alice = new_member(db)
    with pytest.raises(NotFound):
        service.borrow(424242, alice)


def test_borrow_without_free_copy(db, service):
    book_id = new_book(db, total_copies=1)
    alice, bob = new_member(db, "Alice"), new_member(db, "Bob")
    service.borrow(book_id, alice)

    with pytest.raises(Unavailable):
        service.borrow(book_id, bob)
    # availability is checked before the duplicate-loan rule
    with pytest.raises(Unavailable):
        service.borrow(book_id, alice)
    assert counters(db, book_id)[1] == 0


def test_reborrow_after_return_creates_new_record(db, service):
    book_id = new_book(db, total_copies=1)
    alice = new_member(db)
    first = service.borrow(book_id, alice)
    service.return_book(first.id)

    second = service.borrow(book_id, alice)
    assert second.id != first.id
    assert db.get(Borrowing, first.id).status == BorrowingStatus.RETURNED
    assert open_loans(db, book_id) == 1


def test_return_unknown_or_closed(db, service):
    book_id = new_book(db)
    alice = new_member(db)
    with pytest.raises(NotFound):
        service.return_book(777)

    borrowing = service.borrow(book_id, alice)
    service.return_book(borrowing.id)
    with pytest.raises(InvalidState):
        service.return_book(borrowing.id)
    assert counters(db, book_id)[1] == 3


def test_return_checks_owner_when_given(db, service):
    book_id = new_book(db)
    alice, bob = new_member(db, "Alice"), new_member(db, "Bob")
    borrowing = service.borrow(book_id, alice)

    with pytest.raises(Forbidden):
        service.return_book(borrowing.id, member_id=bob)
    assert service.return_book(borrowing.id, member_id=alice).status == BorrowingStatus.RETURNED


def test_return_never_exceeds_total(db, service):
    book_id = new_book(db, total_copies=2)
    alice = new_member(db)
    borrowing = service.borrow(book_id, alice)
    # counter drifted upwards outside the service
    db.execute(update(Book).where(Book.id == book_id).values(available_copies=2))
    db.commit()

    service.return_book(borrowing.id)
    assert counters(db, book_id)[:2] == (2, 2)


def test_delete_blocked_by_active_borrowing(db, service):
    book_id = new_book(db, total_copies=1)
    alice = new_member(db)
    borrowing = service.borrow(book_id, alice)

    with pytest.raises(Conflict):
        service.delete_book(book_id)
    assert db.get(Book, book_id) is not None

    service.return_book(borrowing.id)
    service.delete_book(book_id)
    assert db.get(Book, book_id, populate_existing=True) is None
    assert db.scalar(select(func.count(Borrowing.id)).where(Borrowing.book_id == book_id)) == 0


def test_delete_unknown_book(service):
    with pytest.raises(NotFound):
        service.delete_book(5150)


def test_update_copies_reduces_available_by_delta(db, service):
    book_id = new_book(db, total_copies=3)
    book = service.update_book_copies(book_id, 1)
    assert (book.total_copies, book.available_copies) == (1, 1)


def test_update_copies_increase_keeps_loans(db, service):
    book_id = new_book(db, total_copies=3)
    service.borrow(book_id, new_member(db))
    book = service.update_book_copies(book_id, 5)
    assert (book.total_copies, book.available_copies) == (5, 4)


def test_update_copies_rejects_less_than_one(db, service):
    book_id = new_book(db)
    with pytest.raises(InvalidArgument):
        service.update_book_copies(book_id, 0)
    with pytest.raises(NotFound):
        service.update_book_copies(999, 2)
    assert counters(db, book_id) == (3, 3, 0)


def test_clamp_policy_floors_available(db, service):
    book_id = new_book(db, total_copies=3)
    loans = [service.borrow(book_id, new_member(db, name)) for name in ("Alice", "Bob")]

    book = service.update_book_copies(book_id, 1)
    assert (book.total_copies, book.available_copies, book.copy_deficit) == (1, 0, 0)

    service.return_book(loans[0].id)
    assert counters(db, book_id) == (1, 1, 0)
    service.return_book(loans[1].id)
    assert counters(db, book_id) == (1, 1, 0)


def test_reject_policy_refuses_reduction_below_loans(db):
    service = BorrowingService(db, policy="reject", clock=clock)
    book_id = new_book(db, total_copies=3)
    for name in ("Alice", "Bob"):
        service.borrow(book_id, new_member(db, name))

    with pytest.raises(Conflict):
        service.update_book_copies(book_id, 1)
    assert counters(db, book_id) == (3, 1, 0)

    book = service.update_book_copies(book_id, 2)
    assert (book.total_copies, book.available_copies) == (2, 0)


def test_deficit_policy_tracks_missing_copies(db):
    service = BorrowingService(db, policy="deficit", clock=clock)
    book_id = new_book(db, total_copies=3)
    loans = [service.borrow(book_id, new_member(db, name)) for name in ("Alice", "Bob", "Carol")]

    book = service.update_book_copies(book_id, 1)
    assert (book.total_copies, book.available_copies, book.copy_deficit) == (1, 0, 2)

    service.return_book(loans[0].id)
    assert counters(db, book_id) == (1, 0, 1)
    service.return_book(loans[1].id)
    assert counters(db, book_id) == (1, 0, 0)
    service.return_book(loans[2].id)
    assert counters(db, book_id) == (1, 1, 0)


def test_deficit_absorbed_by_new_copies(db):
    service = BorrowingService(db, policy="deficit", clock=clock)
    book_id = new_book(db, total_copies=3)
    for name in ("Alice", "Bob", "Carol"):
        service.borrow(book_id, new_member(db, name))
    service.update_book_copies(book_id, 1)

    book = service.update_book_copies(book_id, 4)
    assert (book.total_copies, book.available_copies, book.copy_deficit) == (4, 1, 0)


def test_unknown_policy():
    with pytest.raises(ValueError):
        BorrowingService(None, policy="shrug")


def test_counters_stay_in_range(db, service):
    book_id = new_book(db, total_copies=2)
    members = [new_member(db, name) for name in ("Alice", "Bob", "Carol", "Dan")]
    open_ids = []
    for step, member_id in enumerate(members * 3):
        try:
            open_ids.append(service.borrow(book_id, member_id).id)
        except (Unavailable, AlreadyBorrowed):
            pass
        if step % 3 == 2 and open_ids:
            service.return_book(open_ids.pop(0))
        total, available, _ = counters(db, book_id)
        assert 0 <= available <= total
        assert available == total - open_loans(db, book_id)

    per_pair = db.execute(
        select(Borrowing.member_id, func.count(Borrowing.id))
        .where(Borrowing.status == BorrowingStatus.BORROWED)
        .group_by(Borrowing.book_id, Borrowing.member_id)
    ).all()
    assert all(count == 1 for _, count in per_pair)


def test_store_rejects_out_of_range_counters(db):
    book_id = new_book(db, total_copies=1)
    with pytest.raises(IntegrityError):
        db.execute(update(Book).where(Book.id == book_id).values(available_copies=2))
    db.rollback()


def test_duplicate_open_loan_blocked_by_index(db):
    book_id = new_book(db)
    alice = new_member(db)
    db.add_all([
        Borrowing(book_id=book_id, member_id=alice, due_date=NOW),
        Borrowing(book_id=book_id, member_id=alice, due_date=NOW),
    ])
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_failed_insert_leaves_counter_untouched(db, service, monkeypatch):
    book_id = new_book(db, total_copies=2)
    alice = new_member(db)

    def broken_flush(*args, **kwargs):
        raise OperationalError("INSERT INTO borrowings", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "flush", broken_flush)
    with pytest.raises(StoreError):
        service.borrow(book_id, alice)
    monkeypatch.undo()

    assert counters(db, book_id)[1] == 2
    assert db.scalar(select(func.count(Borrowing.id))) == 0


def test_failed_restock_keeps_loan_open(db, service, monkeypatch):
    book_id = new_book(db, total_copies=2)
    borrowing_id = service.borrow(book_id, new_member(db)).id

    real_execute = db.execute

    def flaky_execute(statement, *args, **kwargs):
        if isinstance(statement, Update) and statement.table.name == "books":
            raise OperationalError("UPDATE books", {}, Exception("database is locked"))
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", flaky_execute)
    with pytest.raises(StoreError):
        service.return_book(borrowing_id)
    monkeypatch.undo()

    assert db.get(Borrowing, borrowing_id, populate_existing=True).status == BorrowingStatus.BORROWED
    assert counters(db, book_id)[1] == 1


def test_concurrent_borrow_of_last_copy(db, session_factory):
    book_id = new_book(db, total_copies=1)
    members = [new_member(db, "Alice"), new_member(db, "Bob")]
    # release the connection so the workers do not queue behind this session
    db.close()

    barrier = threading.Barrier(len(members))
    outcomes = []
    lock = threading.Lock()

    def attempt(member_id):
        session = session_factory()
        try:
            barrier.wait()
            BorrowingService(session, policy="clamp").borrow(book_id, member_id)
            result = "ok"
        except LendingError as exc:
            result = exc.code
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(m,)) for m in members]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["ok", "unavailable"]
    assert counters(db, book_id)[1] == 0
    assert open_loans(db, book_id) == 1


def test_current_borrowings_and_history(db):
    days = iter([datetime(2026, 1, 1), datetime(2026, 1, 5), datetime(2026, 1, 6), datetime(2026, 1, 3)])
    service = BorrowingService(db, policy="clamp", loan_days=14, clock=lambda: next(days))
    alice = new_member(db)
    first = service.borrow(new_book(db, title="A"), alice).id
    second_book = new_book(db, title="B")
    second = service.borrow(second_book, alice).id
    service.return_book(second)
    third = service.borrow(new_book(db, title="C"), alice).id

    assert [b.id for b in service.current_borrowings(alice)] == [first, third]
    assert [b.id for b in service.history(alice)] == [second, third, first]
    assert service.is_borrowed_by(second_book, alice) is False


def test_overdue_flag(db):
    service = BorrowingService(db, policy="clamp", loan_days=14, clock=lambda: datetime(2020, 1, 1))
    borrowing = service.borrow(new_book(db), new_member(db))
    assert borrowing.is_overdue is True
    service.return_book(borrowing.id)
    assert borrowing.is_overdue is False


def test_book_edit_commits_with_copy_change_or_not_at_all(db):
    service = BorrowingService(db, policy="reject", clock=clock)
    catalog = CatalogService(db, service)
    book_id = new_book(db, total_copies=2)
    for name in ("Alice", "Bob"):
        service.borrow(book_id, new_member(db, name))

    with pytest.raises(Conflict):
        catalog.update_book_details(book_id, {"title": "Renamed", "total_copies": 1})
    book = db.get(Book, book_id, populate_existing=True)
    assert (book.title, book.total_copies, book.available_copies) == ("Dune", 2, 0)

    book = catalog.update_book_details(book_id, {"title": "Renamed", "total_copies": 3})
    assert (book.title, book.total_copies, book.available_copies) == ("Renamed", 3, 1)


def test_book_edit_refuses_blank_required_field(db):
    catalog = CatalogService(db)
    book_id = new_book(db)
    with pytest.raises(InvalidArgument):
        catalog.update_book_details(book_id, {"author": None})
    assert db.get(Book, book_id, populate_existing=True).author == "Frank Herbert"
