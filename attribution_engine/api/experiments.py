"""
Attribution Experiment API Endpoints

Champion/challenger A/B tests between two registered models.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from attribution_engine.api.deps import get_engine, http_error
from attribution_engine.exceptions import AttributionEngineError

router = APIRouter(prefix="/attribution", tags=["experiments"])


class ExperimentRequest(BaseModel):
    name: str
    control_model: str
    treatment_model: str
    traffic_split: float = Field(..., description="Share of traffic on the treatment model, 0-100")
    description: str = ""


class StopExperimentRequest(BaseModel):
    winner: Optional[str] = Field(None, description="control or treatment")


@router.get("/experiments")
def list_experiments(engine=Depends(get_engine)):
    experiments = engine.list_experiments()
    return {
        "count": len(experiments),
        "running": sum(1 for e in experiments if e['status'] == 'running'),
        "experiments": experiments
    }


@router.post("/experiments", status_code=201)
def create_experiment(request: ExperimentRequest, engine=Depends(get_engine)):
    try:
        return engine.create_experiment(
            name=request.name,
            control_id=request.control_model,
            treatment_id=request.treatment_model,
            traffic_split=request.traffic_split,
            description=request.description
        )
    except AttributionEngineError as e:
        raise http_error(e)


@router.get("/experiments/{experiment_id}")
def get_experiment(experiment_id: str, engine=Depends(get_engine)):
    try:
        experiment = engine.get_experiment(experiment_id)
        experiment['snapshots'] = engine.experiments.snapshots(experiment_id)
        return experiment
    except AttributionEngineError as e:
        raise http_error(e)


@router.post("/experiments/{experiment_id}/start")
def start_experiment(experiment_id: str, engine=Depends(get_engine)):
    try:
        return engine.start_experiment(experiment_id)
    except AttributionEngineError as e:
        raise http_error(e)


@router.post("/experiments/{experiment_id}/stop")
def stop_experiment(
    experiment_id: str,
    request: Optional[StopExperimentRequest] = None,
    engine=Depends(get_engine)
):
    try:
        return engine.stop_experiment(experiment_id, winner=request.winner if request else None)
    except AttributionEngineError as e:
        raise http_error(e)


@router.post("/experiments/{experiment_id}/cancel")
def cancel_experiment(experiment_id: str, engine=Depends(get_engine)):
    try:
        return engine.cancel_experiment(experiment_id)
    except AttributionEngineError as e:
        raise http_error(e)
