"""
Shared API dependencies and error mapping
"""
from fastapi import HTTPException, Request

from attribution_engine.exceptions import (
    AttributionEngineError, NotFoundError, OperationCancelled, StateConflictError, ValidationError
)
from attribution_engine.services.engine import AttributionEngine

STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    StateConflictError: 409,
    OperationCancelled: 409,
}


def get_engine(request: Request) -> AttributionEngine:
    """Engine created by the application lifespan"""
    return request.app.state.engine


def http_error(e: AttributionEngineError) -> HTTPException:
    for exc_type, status_code in STATUS_CODES.items():
        if isinstance(e, exc_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
