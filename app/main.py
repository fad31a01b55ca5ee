"""ASGI entrypoint for the identity service: loads .env, mounts the v1 routers."""

from dotenv import load_dotenv

load_dotenv()

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1 import router as v1_router
from app.core.config import settings
from app.repositories.errors import StorageError

logger = logging.getLogger(__name__)

app = FastAPI(
    title="DVC Identity API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "dev" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(v1_router, prefix=settings.API_V1_PREFIX)

if settings.JWT_SECRET is None:
    logger.warning("JWT_SECRET is not set; login and refresh will return 503")


@app.exception_handler(StorageError)
def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Storage faults that escape a route surface as 500 without internal detail."""
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal error."},
    )


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "DVC Identity API"}
