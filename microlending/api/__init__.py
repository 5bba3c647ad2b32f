"""
Micro-lending API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .deps import envelope
from .admin import router as admin_router
from .loans import router as loans_router
from .payments import router as payments_router
from .users import router as users_router
from ..config import get_config
from ..errors import LendingError
from ..logging_config import get_logger


logger = get_logger("microlending.api")


def _register_error_handlers(app: FastAPI) -> None:
    """Every error leaves the API in the response envelope"""

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(data=exc.details or None, message=exc.message, success=False)
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(message=str(exc.detail), success=False)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=envelope(data={"errors": errors}, message="Invalid request", success=False)
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    app = FastAPI(
        title="Micro-lending API",
        description="Loan applications, processing fees, approvals and disbursement",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)

    app.include_router(loans_router, prefix="/loan", tags=["Loans"])
    app.include_router(payments_router, prefix="/payment", tags=["Payments"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])
    app.include_router(users_router, prefix="/user", tags=["Users"])

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "microlending_api",
            "version": "1.0.0"
        }

    return app


app = create_app()
