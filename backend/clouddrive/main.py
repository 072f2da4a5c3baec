"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clouddrive.config import settings
from clouddrive.routes.drive import SessionRegistry, router as drive_router
from clouddrive.services.analysis import FileAnalyzer
from clouddrive.services.drive_repository import DriveRepository
from clouddrive.services.file_storage import create_blob_store
from clouddrive.services.llm_base import create_llm_provider
from clouddrive.services.metadata_store import create_metadata_store

logger = logging.getLogger(__name__)


def build_analyzer() -> FileAnalyzer:
    try:
        provider = create_llm_provider()
    except ValueError as e:
        logger.warning("AI analysis disabled: %s", e)
        provider = None
    return FileAnalyzer(provider)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup and wire the shared stores."""
    if settings.METADATA_STORE_TYPE == "sql":
        from clouddrive.database import engine
        from clouddrive.models import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    repository = DriveRepository(create_metadata_store(), create_blob_store())
    app.state.sessions = SessionRegistry(repository, build_analyzer())

    yield

    # Cleanup
    app.state.sessions.close()
    if settings.METADATA_STORE_TYPE == "sql":
        from clouddrive.database import engine

        await engine.dispose()


app = FastAPI(
    title="Cloud Drive API",
    version="1.0.0",
    description="Personal cloud drive: files, folders, trash and AI summaries.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Verify API and metadata store connectivity."""
    if settings.METADATA_STORE_TYPE != "sql":
        return {"status": "ok", "database": settings.METADATA_STORE_TYPE}
    from sqlalchemy import text
    from clouddrive.database import get_db

    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


app.include_router(drive_router)
