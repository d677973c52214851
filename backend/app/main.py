"""
FastAPI entrypoint for the SafeSwap escrow backend.
"""
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.exceptions import EscrowError
from app.core.utils import format_error
from app.api.router import api_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="SafeSwap API",
    description="Escrow deal lifecycle engine",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    """Render lifecycle errors with their status and machine-readable code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    details = {"code": exc.code, "retryable": exc.retryable}
    if getattr(exc, "escalate", False):
        details["escalated"] = True
    return JSONResponse(status_code=exc.status_code, content=format_error(exc.message, details))


# Include API routes
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"message": "SafeSwap API is running"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
