"""
Mini Loan API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..config import get_config
from ..errors import (
    LoanError, ValidationError, ConflictError, LoanNotFoundError,
    OverpaymentError, ClosedLoanError
)
from ..logging_config import get_logger, log_action
from .loans import router as loans_router
from .payments import router as payments_router


logger = get_logger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    ConflictError: 409,
    LoanNotFoundError: 404,
    OverpaymentError: 400,
    ClosedLoanError: 409,
}


def status_for(error: LoanError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return 400


async def loan_error_handler(request: Request, exc: LoanError) -> JSONResponse:
    status_code = status_for(exc)
    log_action(logger, "info", f"{request.method} {request.url.path} -> {status_code}",
               borrower_id=request.headers.get("x-borrower-id"),
               action=exc.kind, resource=request.url.path)
    body = exc.to_dict()
    body["detail"] = exc.message
    return JSONResponse(status_code=status_code, content=body)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    app = FastAPI(
        title="Mini Loan API",
        description="Simple-interest loan creation and payment ledger",
        version=__version__,
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

    app.add_exception_handler(LoanError, loan_error_handler)

    app.include_router(loans_router, prefix="/api/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "mini_loan_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "mini_loan.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
