from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sqlalchemy import text
from recordexport.core.config import settings
from recordexport.database import engine, Base, get_db
from recordexport.models.stored_preference import StoredPreference  # noqa: F401
from recordexport.dependencies import platform_client, export_job_manager
from recordexport.routers import fields, selections, exports
from recordexport.core.logging_config import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Alembic owns the schema for server databases; local SQLite files are created on the fly
    if engine.dialect.name == "sqlite":
        Base.metadata.create_all(bind=engine)
    logger.info(f"Record export service starting: environment={settings.ENVIRONMENT}")
    yield
    await export_job_manager.force_cleanup()
    await platform_client.aclose()
    logger.info("Record export service stopped")


app = FastAPI(
    title="Record Export API",
    version="1.0.0",
    redirect_slashes=False,  # Disable automatic redirects to prevent POST data loss
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Detection-Stale"],
)

# Include routers
app.include_router(fields.router, prefix="/api/fields", tags=["Fields"])
app.include_router(selections.router, prefix="/api/selections", tags=["Selections"])
app.include_router(exports.router, prefix="/api/exports", tags=["Exports"])


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "database": "connected"
        }
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unhealthy"
        )
