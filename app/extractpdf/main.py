"""
FastAPI application for the extractPDF processing service.

Provides endpoints for:
- Queueing uploaded files for page-level LLM extraction
- Cancelling runs of removed files
- Run listing, run detail, progress and the folder aggregate
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import __version__
from .config import Settings, get_settings
from .database import SessionLocal, engine, init_db
from .models import HealthResponse
from .routers import processing
from .services.documents import DocumentLoader
from .services.exceptions import ProcessingRunError
from .services.llm_client import LanguageModel, get_llm_client
from .services.pdf_service import get_pdf_service
from .services.processing_queue import ProcessingQueue
from .services.processing_service import ProcessingService, RunExecutor
from .services.repositories import Repositories
from .services.storage import FileStorage, LocalFileStorage

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    bind: Engine | None = None,
    llm: LanguageModel | None = None,
    storage: FileStorage | None = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators default to the configured database, local file storage
    and the OpenRouter client; tests pass their own.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        logger.info("Starting extractPDF processing service...")
        # Note: In production, use migrations instead of init_db()
        init_db(bind or engine)

        repos = Repositories(session_factory or SessionLocal)
        loader = DocumentLoader.from_settings(
            storage or LocalFileStorage(settings.file_storage_root),
            settings,
            pdf_service=get_pdf_service(),
        )
        executor = RunExecutor(repos, loader, llm or get_llm_client(), settings)
        queue = ProcessingQueue.from_settings(executor, settings)

        app.state.repos = repos
        app.state.processing_service = ProcessingService(repos, settings)
        app.state.queue = queue
        logger.info(
            "Processing queue ready (concurrency=%d, max_attempts=%d)",
            queue.concurrency,
            queue.max_attempts,
        )
        yield
        logger.info("Shutting down extractPDF processing service...")
        await queue.shutdown()

    app = FastAPI(
        title="extractPDF Processing API",
        description="Page-level document extraction with a retrying processing queue",
        version=__version__,
        lifespan=lifespan,
    )

    # Configure CORS for frontend development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",  # Vite development server
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Health Endpoints
    # =========================================================================

    @app.get("/", response_model=HealthResponse)
    async def root() -> HealthResponse:
        """Root endpoint - health check."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            message="extractPDF processing API is running",
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy", version=__version__, message="Service is healthy")

    app.include_router(processing.router)

    # =========================================================================
    # Exception Handlers
    # =========================================================================

    @app.exception_handler(ProcessingRunError)
    async def processing_run_error_handler(request, exc: ProcessingRunError):
        """Handle processing errors raised inside request handlers."""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.message, "retryable": exc.retryable},
        )

    return app


app = create_app()
