"""
FastAPI application entry point.

Thin HTTP adapter over the ledger and reporting services.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from stockfolio.core.config import settings
from stockfolio.core.logging import setup_logging
from stockfolio.core.database import close_db, init_db
from stockfolio.core.exceptions import LedgerError

# Setup logging
setup_logging()

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Portfolio transaction ledger, cost basis and performance",
    debug=settings.DEBUG,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_CODE = {
    "validation_error": 400,
    "invalid_ticker": 400,
    "insufficient_funds": 400,
    "insufficient_shares": 400,
    "portfolio_not_found": 404,
    "transaction_not_found": 404,
    "concurrency_conflict": 409,
    "storage_error": 500,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, 500),
        content=exc.to_dict(),
    )


@app.on_event("startup")
async def startup() -> None:
    """Run on application startup."""
    if settings.is_sqlite:
        await init_db()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Run on application shutdown."""
    await close_db()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }


from stockfolio.api.portfolio import router as portfolio_router
from stockfolio.api.transactions import router as transactions_router
from stockfolio.api.performance import router as performance_router
from stockfolio.api.metrics import router as metrics_router

app.include_router(portfolio_router, prefix="/api/v1/portfolios", tags=["portfolios"])
app.include_router(transactions_router, prefix="/api/v1/portfolios", tags=["transactions"])
app.include_router(performance_router, prefix="/api/v1/portfolios", tags=["performance"])
app.include_router(metrics_router, prefix="/api/v1/metrics", tags=["metrics"])
