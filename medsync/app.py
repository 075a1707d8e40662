"""
FastAPI server
Loads configuration, builds the engine and mounts every @api_handler route under /api
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medsync import __version__
from medsync.config.loader import get_config
from medsync.core.engine import get_engine
from medsync.core.logger import get_logger
from medsync.handlers import register_fastapi_routes

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    logger.info(f"Configuration loaded from {config.config_file}")
    engine = get_engine()
    logger.info(f"✓ Engine ready ({type(engine.storage).__name__})")
    yield
    logger.info("Medsync API server stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Medsync API",
        description="Medication event-sourcing and orchestration engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        """Service information"""
        return {"status": "ok", "message": "Medsync API Server", "version": __version__}

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    register_fastapi_routes(app, prefix="/api")
    return app


app = create_app()
