"""
Health check endpoint
"""
from datetime import datetime

from fastapi import APIRouter, Depends

from attribution_engine import __version__
from attribution_engine.api.deps import get_engine

router = APIRouter(prefix="/attribution", tags=["health"])


@router.get("/health")
def health_check(engine=Depends(get_engine)):
    """Health check endpoint"""
    return {
        **engine.health(),
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }
