"""FastAPI application entry point

Run: uvicorn app.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.historical import admin_router, public_router
from app.api.schemas import ErrorBody, ErrorResponse
from app.services.historical.errors import CooldownActiveError, HistoricalPullError

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Historical Rate Pull API",
    version="0.1.0",
    description="Lease-based task queue for backfilling historical lender rates",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],  # local dashboard
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(public_router)
app.include_router(admin_router)


def _error_response(status_code: int, code: str, message: str, details=None, headers=None) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


@app.exception_handler(HistoricalPullError)
def historical_error_handler(request: Request, exc: HistoricalPullError):
    """Domain errors → {"ok": false, "error": {code, message, details}}"""
    headers = None
    if isinstance(exc, CooldownActiveError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.status_code >= 500:
        logger.error("%s %s → %s: %s", request.method, request.url.path, exc.code, exc.message)
    return _error_response(exc.status_code, exc.code, exc.message, exc.details, headers)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies share the INVALID_REQUEST envelope"""
    return _error_response(
        400, "INVALID_REQUEST", "Request body is malformed.", {"errors": jsonable_encoder(exc.errors())}
    )


@app.get("/health")
def health_check():
    """Health check"""
    return {"status": "ok"}
