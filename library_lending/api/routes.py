from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from library_lending.api.deps import (get_borrowing_service, get_catalog_service, get_member_service,
                                      get_current_member, require_member, require_admin)
from library_lending.models.models import Member
from library_lending.schemas import schemas
from library_lending.services.borrowing import BorrowingService
from library_lending.services.catalog import CatalogService
from library_lending.services.members import MemberService

router = APIRouter()

# -----------------------------
# Members
# -----------------------------
@router.post("/members/", response_model=schemas.MemberRegistered, status_code=201)
def register_member(member_in: schemas.MemberCreate, members: MemberService = Depends(get_member_service)):
    return members.register(member_in.full_name, member_in.email)

@router.get("/members/me", response_model=schemas.MemberOut)
def read_me(member: Member = Depends(require_member)):
    return member

@router.put("/members/me", response_model=schemas.MemberOut)
def update_me(profile: schemas.MemberProfileUpdate, member: Member = Depends(require_member),
              members: MemberService = Depends(get_member_service)):
    return members.update_profile(member.id, profile.model_dump(exclude_unset=True))

@router.get("/members/me/stats", response_model=schemas.MemberStats)
def my_stats(member: Member = Depends(require_member), catalog: CatalogService = Depends(get_catalog_service)):
    return catalog.member_stats(member.id)

# -----------------------------
# Books
# -----------------------------
@router.get("/books/", response_model=List[schemas.BookOut])
def list_books(q: Optional[str] = Query(None, description="search title, author, isbn or description"),
               field: str = Query("all", description="all, title, author, isbn or category"),
               category: Optional[str] = None,
               skip: int = Query(0, ge=0), limit: int = Query(20, ge=1, le=100),
               catalog: CatalogService = Depends(get_catalog_service)):
    return catalog.list_books(q=q, category=category, field=field, skip=skip, limit=limit)

@router.get("/books/categories", response_model=List[str])
def list_categories(catalog: CatalogService = Depends(get_catalog_service)):
    return catalog.categories()

@router.get("/books/{book_id}", response_model=schemas.BookDetail)
def read_book(book_id: int, member: Optional[Member] = Depends(get_current_member),
              catalog: CatalogService = Depends(get_catalog_service)):
    detail = schemas.BookDetail.model_validate(catalog.get_book(book_id))
    if member is not None:
        detail.borrowed_by_me = catalog.borrowing.is_borrowed_by(book_id, member.id)
    return detail

@router.post("/books/", response_model=schemas.BookOut, status_code=201)
def create_book(book_in: schemas.BookCreate, admin: Member = Depends(require_admin),
                catalog: CatalogService = Depends(get_catalog_service)):
    return catalog.create_book(book_in.model_dump())

@router.put("/books/{book_id}", response_model=schemas.BookOut)
def update_book(book_id: int, book_upd: schemas.BookUpdate, admin: Member = Depends(require_admin),
                catalog: CatalogService = Depends(get_catalog_service)):
    return catalog.update_book_details(book_id, book_upd.model_dump(exclude_unset=True))

@router.put("/books/{book_id}/copies", response_model=schemas.BookOut)
def update_book_copies(book_id: int, copies: schemas.CopiesUpdate, admin: Member = Depends(require_admin),
                       service: BorrowingService = Depends(get_borrowing_service)):
    return service.update_book_copies(book_id, copies.total_copies)

@router.delete("/books/{book_id}")
def delete_book(book_id: int, admin: Member = Depends(require_admin),
                service: BorrowingService = Depends(get_borrowing_service)):
    service.delete_book(book_id)
    return {"ok": True}

# -----------------------------
# Borrowings
# -----------------------------
@router.post("/books/{book_id}/borrow", response_model=schemas.BorrowingOut, status_code=201)
def borrow_book(book_id: int, member: Optional[Member] = Depends(get_current_member),
                service: BorrowingService = Depends(get_borrowing_service)):
    return service.borrow(book_id, member.id if member else None)

@router.post("/borrowings/{borrowing_id}/return", response_model=schemas.BorrowingOut)
def return_book(borrowing_id: int, member: Member = Depends(require_member),
                service: BorrowingService = Depends(get_borrowing_service)):
    owner = None if member.is_admin else member.id
    return service.return_book(borrowing_id, member_id=owner)

@router.get("/borrowings/current", response_model=List[schemas.BorrowingWithBook])
def current_borrowings(member: Member = Depends(require_member),
                       service: BorrowingService = Depends(get_borrowing_service)):
    return service.current_borrowings(member.id)

@router.get("/borrowings/history", response_model=List[schemas.BorrowingWithBook])
def borrowing_history(member: Member = Depends(require_member),
                      service: BorrowingService = Depends(get_borrowing_service)):
    return service.history(member.id)
