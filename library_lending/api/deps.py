from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from library_lending.core.database import get_db
from library_lending.core.exceptions import Unauthenticated, Forbidden
from library_lending.models.models import Member
from library_lending.services.borrowing import BorrowingService
from library_lending.services.catalog import CatalogService
from library_lending.services.members import MemberService


def get_borrowing_service(db: Session = Depends(get_db)) -> BorrowingService:
    return BorrowingService(db)


def get_catalog_service(borrowing: BorrowingService = Depends(get_borrowing_service)) -> CatalogService:
    return CatalogService(borrowing.db, borrowing)


def get_member_service(db: Session = Depends(get_db)) -> MemberService:
    return MemberService(db)


def get_current_member(x_api_token: Optional[str] = Header(None),
                       members: MemberService = Depends(get_member_service)) -> Optional[Member]:
    return members.resolve_token(x_api_token)


def require_member(member: Optional[Member] = Depends(get_current_member)) -> Member:
    if member is None:
        raise Unauthenticated("Please login to continue")
    return member


def require_admin(member: Member = Depends(require_member)) -> Member:
    if not member.is_admin:
        raise Forbidden()
    return member
