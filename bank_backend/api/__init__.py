"""
Banking Backend API Application Factory
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..errors import (
    AuthenticationError, AuthorizationError, BankingError, ConflictError,
    InsufficientFundsError, NotFoundError, ValidationError
)
from ..logging_config import get_logger, log_action, setup_logging
from .auth import shutdown_banking_system
from .users import router as users_router
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .notifications import router as notifications_router


logger = get_logger("bank.api")

# Most specific class first
STATUS_CODES = (
    (InsufficientFundsError, 400),
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
)


def status_for(error: BankingError) -> int:
    for error_class, status_code in STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


async def banking_error_handler(request: Request, exc: BankingError) -> JSONResponse:
    status_code = status_for(exc)
    log_action(
        logger, "warning" if status_code < 500 else "error",
        f"{request.method} {request.url.path} failed: {exc.message}",
        action="request_failed", resource=request.url.path,
        extra={"status": status_code, "kind": exc.kind}
    )
    return JSONResponse(status_code=status_code, content={"error": exc.kind, "detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": ValidationError.kind, "detail": "; ".join(messages)},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup; drain notifications and close storage on shutdown"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    yield
    shutdown_banking_system()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Banking Backend API",
        description="Users, accounts, transactions and notifications with role-based access",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BankingError, banking_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Include routers
    app.include_router(users_router, prefix="/api/users", tags=["Users"])
    app.include_router(accounts_router, prefix="/api/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/api/transactions", tags=["Transactions"])
    app.include_router(notifications_router, prefix="/api/notifications", tags=["Notifications"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "bank_backend_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Banking Backend API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "users": "/api/users",
                "accounts": "/api/accounts",
                "transactions": "/api/transactions",
                "notifications": "/api/notifications",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "bank_backend.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
