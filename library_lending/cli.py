import argparse
import logging

from sqlalchemy import select, func

from library_lending.core.config import settings, configure_logging
from library_lending.core.database import SessionLocal, init_db
from library_lending.core.exceptions import LendingError
from library_lending.models.models import Book, Member, MemberRole
from library_lending.services.catalog import CatalogService
from library_lending.services.members import MemberService

logger = logging.getLogger("library_lending.cli")

SAMPLE_BOOKS = [
    {"title": "Data Engineering with Python", "author": "J. Reader", "isbn": "978-1111111111",
     "category": "Technology", "total_copies": 3},
    {"title": "Designing Data-Intensive Applications", "author": "Martin Kleppmann",
     "isbn": "978-0980000000", "category": "Technology", "total_copies": 2},
    {"title": "The Left Hand of Darkness", "author": "Ursula K. Le Guin", "isbn": "978-0441478125",
     "category": "Fiction", "total_copies": 1},
]


def seed(db):
    """Idempotent demo data: one admin, one member, a few books."""
    created = []
    if db.scalar(select(func.count(Member.id))) == 0:
        members = MemberService(db)
        created.append(members.register("Library Admin", "admin@example.com", MemberRole.ADMIN))
        created.append(members.register("Alice Reader", "alice@example.com"))
    if db.scalar(select(func.count(Book.id))) == 0:
        catalog = CatalogService(db)
        for data in SAMPLE_BOOKS:
            catalog.create_book(data)
    logger.info("Seeded sample data")
    return created


def build_parser():
    parser = argparse.ArgumentParser(prog="library-lending", description="Library lending service utilities")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("initdb", help="Create tables")
    sub.add_parser("seed", help="Seed sample data")
    admin = sub.add_parser("create-admin", help="Register an administrator and print its token")
    admin.add_argument("--name", required=True)
    admin.add_argument("--email", required=True)
    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)
    serve.add_argument("--reload", action="store_true")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "serve":
        import uvicorn
        uvicorn.run("library_lending.main:app", host=args.host, port=args.port, reload=args.reload,
                    log_level=settings.log_level.lower())
        return 0

    init_db()
    if args.command == "initdb":
        print("Done")
        return 0

    db = SessionLocal()
    try:
        if args.command == "seed":
            for member in seed(db):
                print(f"{member.email}\t{member.role.value}\t{member.api_token}")
        elif args.command == "create-admin":
            member = MemberService(db).register(args.name, args.email, MemberRole.ADMIN)
            print(member.api_token)
    except LendingError as exc:
        logger.error("%s failed: %s", args.command, exc.message)
        return 1
    finally:
        db.close()
    print("Done")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
