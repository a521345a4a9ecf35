"""
FastAPI serving endpoint for DRESS models.

Serves one exported model snapshot (``MODEL_PATH``, default
``./models/model.json``) for prediction and held-out validation, and exposes
the asynchronous dispatcher so fits, cross-validations, selections and tuning
runs can be started as background jobs and polled.

Subjects are posted as the same nested JSON records used for training; a
feature missing from a subject yields a ``null`` prediction rather than an
error.
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from contextlib import asynccontextmanager
from dataclasses import fields, is_dataclass
from collections.abc import Mapping
import json
import math
import numpy as np
import pandas as pd
import yaml
import logging
import uvicorn
from pathlib import Path
from typing import Dict, List, Optional, Any
from datetime import datetime
import time
import os

from dress.models.base import MODEL_REGISTRY, Model, get_model_class
from dress.serving.dispatch import FACTORY_OPERATIONS, AsyncDispatcher
from dress.utils.config import RuntimeConfig
from dress.utils.errors import ModelingError

logger = logging.getLogger(__name__)

# Global state: loaded model, dispatcher and submitted jobs
model: Optional[Model] = None
model_path: Optional[Path] = None
dispatcher: Optional[AsyncDispatcher] = None
jobs: Dict[str, Any] = {}

MAX_BATCH_SIZE = 1000
# Completed jobs kept for polling; the oldest are dropped beyond this
MAX_RETAINED_JOBS = int(os.getenv('MAX_RETAINED_JOBS', '100'))
DONE_STATUSES = ("finished", "error", "cancelled")


class SubjectRequest(BaseModel):
    """A single nested subject record."""

    subject: Dict[str, Any] = Field(..., description="Nested subject record")

    model_config = {
        "json_schema_extra": {
            "example": {
                "subject": {
                    "Demographics": {"Age": 54, "Sex": "F"},
                    "Labs": {"Bilirubin": 1.2, "Albumin": 3.9},
                    "Exams": {"BMI": 27.4},
                    "Admissions": [{"Year": 2019}, {"Year": 2021}],
                }
            }
        }
    }


class PredictionResponse(BaseModel):
    """Response schema for predictions."""

    prediction: Any = Field(None, description="Class label or predicted value; null when an input is missing")
    estimate: Any = Field(None, description="Class probabilities or predicted value")
    model_kind: str = Field(..., description="Model variant")
    timestamp: str = Field(..., description="Prediction timestamp")


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str = Field(..., description="Service status")
    model_loaded: bool = Field(..., description="Whether model is loaded")
    timestamp: str = Field(..., description="Health check timestamp")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")


class BatchPredictionRequest(BaseModel):
    """Batch prediction request schema."""

    subjects: List[Dict[str, Any]] = Field(..., description="List of subject records")


class BatchPredictionResponse(BaseModel):
    """Batch prediction response schema."""

    predictions: List[PredictionResponse] = Field(..., description="List of predictions")
    total_processed: int = Field(..., description="Total number of subjects processed")
    processing_time_seconds: float = Field(..., description="Total processing time")


class ValidationResponse(BaseModel):
    """Held-out performance of the loaded model."""

    performance: Dict[str, Optional[float]] = Field(..., description="Metrics; null when undefined")
    total_submitted: int = Field(..., description="Subjects received, including ones left out for missing data")


class JobRequest(BaseModel):
    """Background job: a dispatcher operation applied to posted subjects."""

    operation: str = Field(..., description="Operation name, e.g. 'random_forest' or 'cross_validate'")
    kind: Optional[str] = Field(None, description="Model kind for operations taking a model factory")
    subjects: List[Dict[str, Any]] = Field(..., description="Subjects to operate on")
    args: List[Any] = Field(default_factory=list, description="Positional arguments after the subjects")
    kwargs: Dict[str, Any] = Field(default_factory=dict, description="Keyword arguments")
    seed: Optional[int] = Field(None, description="Random seed for reproducible jobs")


class JobResponse(BaseModel):
    """State of a background job."""

    job_id: str = Field(..., description="Job identifier")
    operation: str = Field(..., description="Operation name")
    status: str = Field(..., description="pending, finished or error")
    result: Any = Field(None, description="Serialized result once finished")
    error: Optional[str] = Field(None, description="Error message if the job failed")


# Global startup time for uptime calculation
startup_time = time.time()


def load_model(path: Optional[str] = None) -> Optional[Model]:
    """Load the exported model snapshot into the global state."""
    global model, model_path

    model_path = Path(path or os.getenv('MODEL_PATH', './models/model.json'))
    if not model_path.exists():
        logger.warning(f"Model file not found: {model_path}; prediction endpoints disabled")
        model = None
        return None

    with open(model_path, 'r', encoding='utf-8') as f:
        model = Model.from_export(json.load(f))
    logger.info(f"Model loaded from {model_path}: {model!r}")
    return model


def get_dispatcher() -> AsyncDispatcher:
    global dispatcher
    if dispatcher is None:
        dispatcher = AsyncDispatcher()
    return dispatcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    global dispatcher
    logger.info("Starting DRESS API...")
    load_model()
    logger.info("API startup completed")
    yield
    if dispatcher is not None:
        dispatcher.close()
        dispatcher = None
    jobs.clear()
    logger.info("API shutdown completed")


def load_serving_config() -> Dict[str, Any]:
    serving_config_path = Path(os.getenv('SERVING_CONFIG', './config/serving_config.yaml'))
    if serving_config_path.exists():
        with open(serving_config_path, 'r') as f:
            return yaml.safe_load(f) or {}
    return {}


def create_app() -> FastAPI:
    """Create FastAPI application."""
    api_config = load_serving_config().get('api', {})

    app = FastAPI(
        title=api_config.get('title', 'DRESS Modeling API'),
        description=api_config.get('description', 'Prediction, validation and modeling jobs over nested clinical subjects'),
        version=api_config.get('version', '1.0.0'),
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()


def serialize(value: Any) -> Any:
    """Turn operation results into JSON-compatible values; NaN and infinities become null."""
    if isinstance(value, Model):
        return serialize(value.export())
    if isinstance(value, pd.DataFrame):
        return serialize(value.to_dict(orient="records"))
    if hasattr(value, "to_dict") and callable(value.to_dict):
        return serialize(value.to_dict())
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: serialize(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {str(k): serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    if isinstance(value, np.ndarray):
        return serialize(value.tolist())
    if isinstance(value, np.generic):
        return serialize(value.item())
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def require_model() -> Model:
    if model is None:
        raise HTTPException(status_code=503, detail="Model not loaded")
    return model


def predict_subject(subject: Dict[str, Any]) -> PredictionResponse:
    return PredictionResponse(
        prediction=serialize(model.predict(subject)),
        estimate=serialize(model.estimate(subject)),
        model_kind=model.kind,
        timestamp=datetime.now().isoformat(),
    )


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    uptime = time.time() - startup_time

    return HealthResponse(
        status="healthy" if model is not None else "unhealthy",
        model_loaded=model is not None,
        timestamp=datetime.now().isoformat(),
        uptime_seconds=uptime
    )


@app.get("/model/info")
async def model_info():
    """Get model information."""
    current = require_model()
    snapshot = current.export()
    return serialize({
        "kind": current.kind,
        "description": repr(current),
        "target": snapshot["target"],
        "features": snapshot["features"],
        "classification": current.classification,
        "classes": snapshot["classes"],
        "hyperparameters": snapshot["hyperparameters"],
        "seed": current.seed,
        "model_path": str(model_path) if model_path else None,
    })


@app.post("/predict", response_model=PredictionResponse)
async def predict(request: SubjectRequest):
    """Make prediction for a single subject."""
    require_model()
    response = predict_subject(request.subject)
    logger.info(f"Prediction: {response.prediction}")
    return response


@app.post("/predict/batch", response_model=BatchPredictionResponse)
async def predict_batch(request: BatchPredictionRequest):
    """Make predictions for multiple subjects."""
    require_model()

    if len(request.subjects) > MAX_BATCH_SIZE:
        raise HTTPException(status_code=400, detail=f"Batch size too large (max {MAX_BATCH_SIZE})")

    start_time = time.time()
    predictions = [predict_subject(subject) for subject in request.subjects]
    processing_time = time.time() - start_time

    logger.info(f"Batch prediction completed: {len(predictions)} subjects in {processing_time:.3f}s")

    return BatchPredictionResponse(
        predictions=predictions,
        total_processed=len(predictions),
        processing_time_seconds=processing_time
    )


@app.post("/validate", response_model=ValidationResponse)
async def validate(request: BatchPredictionRequest):
    """Held-out performance of the loaded model on labelled subjects."""
    current = require_model()
    performance = current.performance(request.subjects)
    return ValidationResponse(
        performance=performance.to_dict(nan_as_none=True),
        total_submitted=len(request.subjects),
    )


def evict_jobs(limit: Optional[int] = None):
    """Drop the oldest completed jobs once more than ``limit`` are held."""
    limit = MAX_RETAINED_JOBS if limit is None else limit
    done = [job_id for job_id, (_, future) in jobs.items() if future.status in DONE_STATUSES]
    for job_id in done[:max(0, len(done) - limit)]:
        _, future = jobs.pop(job_id)
        future.release()
        logger.info(f"Evicted completed job {job_id}")


@app.post("/jobs", response_model=JobResponse, status_code=202)
async def submit_job(request: JobRequest):
    """Start a background modeling job."""
    kwargs = dict(request.kwargs)
    if request.seed is not None:
        kwargs["config"] = RuntimeConfig(seed=request.seed)

    if request.operation in FACTORY_OPERATIONS:
        if request.kind is None:
            raise HTTPException(status_code=400, detail=f"Operation '{request.operation}' needs a model kind")
        args = [get_model_class(request.kind), request.subjects, *request.args]
    elif request.operation == "permutation_importance":
        args = [require_model(), request.subjects, *request.args]
    else:
        args = [request.subjects, *request.args]

    future = get_dispatcher().submit(request.operation, *args, **kwargs)
    jobs[future.key] = (request.operation, future)
    evict_jobs()
    return JobResponse(job_id=future.key, operation=request.operation, status=future.status)


@app.get("/jobs/{job_id}", response_model=JobResponse)
async def job_status(job_id: str):
    """Poll a background job."""
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job_id}'")
    operation, future = jobs[job_id]

    response = JobResponse(job_id=job_id, operation=operation, status=future.status)
    if future.status == "finished":
        response.result = serialize(future.result())
    elif future.status == "error":
        response.error = str(future.exception())
    return response


@app.delete("/jobs/{job_id}")
async def delete_job(job_id: str):
    """Forget a completed job and release its result."""
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job_id}'")
    operation, future = jobs[job_id]
    if future.status not in DONE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Job '{job_id}' is still {future.status}")
    del jobs[job_id]
    future.release()
    return {"job_id": job_id, "operation": operation, "status": "deleted"}


@app.get("/operations")
async def list_operations():
    """Operations accepted by ``/jobs``."""
    return {
        "models": sorted(MODEL_REGISTRY),
        "operations": sorted(get_dispatcher().operations),
        "factory_operations": list(FACTORY_OPERATIONS),
    }


@app.exception_handler(ModelingError)
async def modeling_error_handler(request: Request, exc: ModelingError):
    """Handle data and configuration problems raised by the models."""
    return JSONResponse(
        status_code=422,
        content={"detail": f"{type(exc).__name__}: {str(exc)}"}
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content={"detail": f"Validation error: {str(exc)}"}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


def main():
    """Main function to run the API server."""
    logging.basicConfig(level=logging.INFO)
    server_config = load_serving_config().get('serving', {})

    uvicorn.run(
        "dress.serving.api:app",
        host=server_config.get('host', '0.0.0.0'),
        port=server_config.get('port', 8000),
        reload=server_config.get('reload', False),
        workers=server_config.get('workers', 1)
    )


if __name__ == "__main__":
    main()
