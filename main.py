"""
Pharmacy Orders API
Order lifecycle, audit trail and duplicate checks for hospital pharmacy medication orders
"""

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import uvicorn
from contextlib import asynccontextmanager
import logging
from datetime import datetime

# Import our modules
from app.database import engine, Base, SessionLocal
from app.routers import orders, order_groups
from app.services.audit_trail import migrate_legacy_history
from app.services.encryption import get_encryption_gateway
from app.utils.error_handler import ErrorContext, ErrorHandler, OrderServiceError, status_code_for
from app.utils.rate_limit import limiter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    # Startup
    logger.info("Starting Pharmacy Orders API...")
    # fails fast when REQUIRE_ENCRYPTION is set without a usable key
    get_encryption_gateway()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")

    db = SessionLocal()
    try:
        moved = migrate_legacy_history(db)
        if moved:
            logger.info(f"Legacy order history migrated: {moved} rows")
    finally:
        db.close()

    yield

    # Shutdown
    logger.info("Shutting down Pharmacy Orders API...")

# Create FastAPI app
app = FastAPI(
    title="Pharmacy Orders API",
    description="REST API for hospital pharmacy medication orders, order groups and their audit history",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(order_groups.router, prefix="/api/v1/order-groups", tags=["order groups"])

@app.get("/")
@limiter.limit("10/minute")
async def root(request: Request):
    """Root endpoint with API information - publicly accessible"""
    return {
        "message": "Pharmacy Orders API",
        "version": "1.0.0",
        "docs": "/docs",
        "redoc": "/redoc",
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/health")
@limiter.limit("30/minute")
async def health_check(request: Request):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "encryption": get_encryption_gateway().is_encryption_configured(),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.exception_handler(OrderServiceError)
async def order_service_exception_handler(request: Request, exc: OrderServiceError):
    """Order subsystem errors that escaped a route"""
    return ErrorHandler.create_error_response(
        ErrorContext(request),
        exc,
        status_code=status_code_for(exc),
    )

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Last-resort handler; logs with a request id and hides internals from the client"""
    error_context = ErrorContext(request)
    logger.error(
        f"Unhandled exception {error_context.request_id}: {type(exc).__name__} in {request.method} {request.url.path}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred. Please try again later.",
                "error_id": error_context.request_id,
                "timestamp": error_context.timestamp.isoformat()
            }
        }
    )

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
