"""
Member Loans API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .loans import router as loans_router
from .members import router as members_router
from .reporting import router as reporting_router
from .. import __version__
from ..config import get_config
from ..errors import (
    ConflictError, LoanError, NotFoundError, OverpaymentError, StateError, ValidationError
)
from ..logging_config import setup_logging


ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    StateError: 409,
    OverpaymentError: 422,
}


def _status_code_for(exc: LoanError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 400


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Member Loans API",
        description="Member loan lifecycle and interest accrual engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanError)
    async def handle_loan_error(request: Request, exc: LoanError):
        return JSONResponse(status_code=_status_code_for(exc), content=exc.to_dict())

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(members_router, prefix="/members", tags=["Members"])
    app.include_router(reporting_router, prefix="/reports", tags=["Reports"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "member_loans_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Member Loans API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "members": "/members/{member_id}/loans",
                "reports": "/reports/portfolio",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False) -> None:
    """Configure logging and serve the API with uvicorn"""
    config = get_config()
    setup_logging(
        level="DEBUG" if debug else config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )
    uvicorn.run(
        "member_loans.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug
    )
