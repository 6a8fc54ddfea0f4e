"""
FastAPI application entrypoint.

Run locally:  uvicorn app.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.routes import router
from app.config import settings
from app.models.database import Base, engine
from app.schemas.api import error_envelope
from app.services.errors import InvalidInput, PriveScreenError

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="PriveScreen Assessment Code API",
    description=(
        "Issues, validates and redeems assessment codes for sexual-health "
        "tests, and accepts lab results against redeemed codes."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api")


@app.exception_handler(PriveScreenError)
async def handle_domain_error(request: Request, exc: PriveScreenError):
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.code, exc.message, exc.details),
    )


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        details.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content=error_envelope(InvalidInput.code, "Please check the submitted fields", details),
    )


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
