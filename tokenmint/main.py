import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import health, payments, queue
from .config import settings
from .core.orchestrator import build_service
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    app.state.service = None
    if settings.queues_enabled:
        service = build_service(settings)
        await service.start()
        app.state.service = service
    else:
        logger.warning("Queues disabled; status endpoints will return 503")
    try:
        yield
    finally:
        if app.state.service is not None:
            await app.state.service.close()
            app.state.service = None


# Create FastAPI app
app = FastAPI(
    title="Tokenmint Queue API",
    description="Payment settlement and batch minting service",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(payments.router, tags=["Payments"])
app.include_router(queue.router, tags=["Queue"])


@app.get("/")
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "Tokenmint Queue API",
        "version": __version__,
        "docs": "/docs",
        "health": "/healthz",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tokenmint.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
