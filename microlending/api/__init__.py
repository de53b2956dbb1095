"""
Microlending API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import LendingError
from ..logging_config import get_logger
from .loans import router as loans_router
from .payments import router as payments_router
from .cron import router as cron_router


logger = get_logger("microlending.api")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Microlending Ledger API",
        description="Loan amortization, payment allocation and overdue tracking",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        logger.warning(
            "Request rejected",
            extra={"action": exc.code, "resource": request.url.path,
                   "extra": {"message": exc.message}}
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": exc.message}
        )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(cron_router, prefix="/cron", tags=["Scheduled jobs"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microlending_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "microlending.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
