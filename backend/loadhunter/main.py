"""Load Hunter dispatch core API"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loadhunter.core.config import get_settings
from loadhunter.core.logging import configure_logging, logger
from loadhunter.routers import invoices, load_hunter
from loadhunter.services.dispatch_state import get_dispatch_state_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    store = get_dispatch_state_store()
    logger.info(
        "Load Hunter API starting",
        version="0.1.0",
        app_mode=settings.normalized_app_mode(),
        auth_enabled=settings.auth_enabled,
        db_path=str(store.db_path),
    )
    yield
    logger.info("Load Hunter API shutting down")


app = FastAPI(
    title="Load Hunter API",
    description="Freight dispatch core: load matching, booking, and invoice reversal",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(load_hunter.router)
app.include_router(invoices.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Load Hunter API",
        "version": "0.1.0",
        "endpoints": {
            "load_hunter": "/load-hunter",
            "invoices": "/invoices",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
