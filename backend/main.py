"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import authorizations, bank_accounts, gocardless, pending_duplicates
from config import settings
from logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Stop pending bank authorizations on shutdown."""
    yield
    authorizations.close_sessions()
    logger.info("Authorization sessions closed")


app = FastAPI(
    title="Bank Sync",
    description="Bank connections and transaction import via GoCardless Bank Account Data",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(bank_accounts.router)
app.include_router(gocardless.router)
app.include_router(authorizations.router)
app.include_router(pending_duplicates.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
