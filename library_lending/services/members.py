import logging
import secrets

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library_lending.core.database import unit_of_work
from library_lending.core.exceptions import Conflict, NotFound, InvalidArgument
from library_lending.models.models import Member, MemberRole

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("full_name", "phone", "address")


class MemberService:
    """Stands in for the identity provider: issues and resolves member tokens."""

    def __init__(self, db: Session):
        self.db = db

    def register(self, full_name: str, email: str, role=MemberRole.MEMBER) -> Member:
        email = email.strip().lower()
        with unit_of_work(self.db):
            existing = self.db.scalars(select(Member).where(Member.email == email)).first()
            if existing:
                raise Conflict("Email already registered")
            member = Member(full_name=full_name.strip(), email=email, role=MemberRole(role),
                            api_token=secrets.token_hex(32))
            self.db.add(member)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise Conflict("Email already registered") from exc
        logger.info("Registered member id=%s email=%s role=%s", member.id, member.email, member.role.value)
        return member

    def update_profile(self, member_id: int, data: dict) -> Member:
        """Members edit their own contact details; email, role and membership stay fixed."""
        fields = {k: v for k, v in data.items() if k in PROFILE_FIELDS}
        if "full_name" in fields and not (fields["full_name"] or "").strip():
            raise InvalidArgument("full_name must not be empty")
        with unit_of_work(self.db):
            member = self.db.get(Member, member_id)
            if member is None:
                raise NotFound(f"Member {member_id} not found")
            for k, v in fields.items():
                setattr(member, k, v.strip() if isinstance(v, str) else v)
        logger.info("Updated profile of member id=%s fields=%s", member_id, sorted(fields))
        return member

    def resolve_token(self, token):
        if not token:
            return None
        return self.db.scalars(select(Member).where(Member.api_token == token)).first()
