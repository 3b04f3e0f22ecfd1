"""
Microlending API Application Factory
"""

from typing import Optional

import uvicorn

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import LendingSystem, get_lending_system
from .applications import router as applications_router
from .payments import router as payments_router
from .reports import router as reports_router
from .schemes import router as schemes_router
from .. import __version__
from ..exceptions import InvalidStateError, NotFoundError, ValidationError
from ..storage import DuplicateRecordError


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Use this lending system instead of the process-wide one
    """
    app = FastAPI(
        title="Microlending API",
        description="Loan application lifecycle and collections reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Lifecycle errors map to distinct statuses so clients can tell them apart
    app.add_exception_handler(ValidationError, _error_handler(400))
    app.add_exception_handler(NotFoundError, _error_handler(404))
    app.add_exception_handler(InvalidStateError, _error_handler(409))
    app.add_exception_handler(DuplicateRecordError, _error_handler(409))

    if system is not None:
        app.dependency_overrides[get_lending_system] = lambda: system

    app.include_router(applications_router, prefix="/applications", tags=["Applications"])
    app.include_router(payments_router, prefix="/loans", tags=["Payments"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])
    app.include_router(schemes_router, prefix="/schemes", tags=["Schemes"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microlending_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Microlending API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "applications": "/applications",
                "loans": "/loans",
                "reports": "/reports",
                "schemes": "/schemes"
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False, workers: int = 1):
    """Run the FastAPI server"""
    uvicorn.run(
        "microlending.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        workers=workers,
        log_level="info"
    )
