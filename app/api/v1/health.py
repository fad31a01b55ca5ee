"""Health check endpoint: database connectivity and whether tokens can be issued."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import check_db_connected, get_db
from app.schemas.health import HealthResponse

router = APIRouter()


@router.get("/", response_model=HealthResponse)
def get_health(db: Session = Depends(get_db)) -> HealthResponse:
    """Used by load balancers and monitoring. Reports "disabled" when JWT_SECRET is unset."""
    db_status = "connected" if check_db_connected(db) else "disconnected"
    token_status = "enabled" if settings.JWT_SECRET is not None else "disabled"

    return HealthResponse(
        status="ok",
        environment=settings.APP_ENV,
        database=db_status,
        token_issuance=token_status,
    )
