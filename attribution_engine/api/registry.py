"""
Attribution Model API Endpoints

List, inspect, register, activate and retrain attribution models.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from attribution_engine.api.deps import get_engine, http_error
from attribution_engine.exceptions import AttributionEngineError

router = APIRouter(prefix="/attribution", tags=["models"])


class ModelRegistrationRequest(BaseModel):
    id: str
    name: str
    kind: str
    type: Optional[str] = None
    description: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    features: Optional[List[str]] = None


@router.get("/models")
def list_models(engine=Depends(get_engine)):
    models = engine.list_models()
    return {
        "champion": engine.registry.champion_id,
        "count": len(models),
        "models": models
    }


@router.post("/models", status_code=201)
def register_model(request: ModelRegistrationRequest, engine=Depends(get_engine)):
    try:
        return engine.register_model(request.model_dump(exclude_none=True))
    except AttributionEngineError as e:
        raise http_error(e)


@router.get("/models/{model_id}")
def get_model(model_id: str, engine=Depends(get_engine)):
    try:
        return engine.get_model(model_id)
    except AttributionEngineError as e:
        raise http_error(e)


@router.post("/models/{model_id}/activate")
def activate_model(model_id: str, engine=Depends(get_engine)):
    """Make a model the champion used for reports"""
    try:
        return engine.set_active_model(model_id)
    except AttributionEngineError as e:
        raise http_error(e)


@router.post("/models/{model_id}/train", status_code=202)
def train_model(model_id: str, engine=Depends(get_engine)):
    """
    Retrain a model in the background

    Poll GET /models/{model_id} until status leaves 'training'.
    """
    try:
        handle = engine.train_model(model_id)
    except AttributionEngineError as e:
        raise http_error(e)

    return {
        "status": "training",
        "model_id": handle.model_id
    }
