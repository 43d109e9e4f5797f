import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from library_lending import __version__
from library_lending.api import routes
from library_lending.core.config import configure_logging
from library_lending.core.database import init_db
from library_lending.core.exceptions import LendingError

logger = logging.getLogger("library_lending")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Creating database tables (if not present)...")
    init_db()
    yield


async def lending_error_handler(request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


def create_app(create_tables=True):
    configure_logging()
    app = FastAPI(title="Library Lending Service", version=__version__,
                  lifespan=lifespan if create_tables else None)
    app.add_exception_handler(LendingError, lending_error_handler)
    app.include_router(routes.router)

    @app.get("/health")
    def health():
        return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()
