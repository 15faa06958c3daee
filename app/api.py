"""
FastAPI routes for transaction classification.
Thin API layer over TransactionService: classification, background bulk
analysis jobs, duplicate detection, readiness evaluation and settings.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.config import get_settings
from core.exceptions import ClassificationServiceError, ConfigurationError
from core.logger import setup_logger
from core.schema import (
    BulkAnalysisOptions,
    BulkAnalysisProgress,
    ClassificationResult,
    ConfidenceThresholds,
    DuplicateDetectionResult,
    DuplicateDetectionSettings,
    ExtractionResult,
    ProcessingDecision,
    Rule,
    Transaction,
)
from services.transaction_service import TransactionService, apply_classification

logger = setup_logger(__name__)
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    description="Confidence-gated classification of bank statement transactions",
    version="1.0.0"
)

# In-memory job storage
jobs: Dict[str, Dict[str, Any]] = {}

# Service instance (one processing session per process)
transaction_service = TransactionService()


class ClassifyRequest(BaseModel):
    transactions: List[Transaction] = Field(..., min_length=1)
    apply: bool = False


class ClassifyResponse(BaseModel):
    results: List[ClassificationResult]
    transactions: Optional[List[Transaction]] = None
    fallback_mode: bool


class BulkRequest(BaseModel):
    transactions: List[Transaction] = Field(..., min_length=1)
    all_transactions: Optional[List[Transaction]] = None
    options: Optional[BulkAnalysisOptions] = None


class DuplicatesRequest(BaseModel):
    transactions: List[Transaction]


class ReadinessRequest(BaseModel):
    extraction: ExtractionResult
    classifications: Optional[List[ClassificationResult]] = None


@app.exception_handler(ClassificationServiceError)
async def service_error_handler(request: Request, exc: ClassificationServiceError):
    """Map service errors to 4xx responses with the error details."""
    status_code = 422 if isinstance(exc, ConfigurationError) else 400
    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.message, "details": exc.details},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    cascade = transaction_service.cascade
    return {
        "status": "healthy",
        "service": "statement_classification",
        "version": "1.0.0",
        "remote_configured": cascade.client is not None,
        "fallback_mode": cascade.fallback_mode,
    }


@app.post("/classify", response_model=ClassifyResponse)
async def classify(request: ClassifyRequest):
    """
    Classify transactions through the cascade.

    Args:
        request: Transactions and whether to write results onto them

    Returns:
        One result per transaction (and the updated transactions when apply is set)
    """
    results = await transaction_service.aclassify_transactions(
        request.transactions, timeout=settings.openai_timeout
    )
    transactions = None
    if request.apply:
        transactions = [apply_classification(t, r) for t, r in zip(request.transactions, results)]

    return ClassifyResponse(
        results=results,
        transactions=transactions,
        fallback_mode=transaction_service.cascade.fallback_mode,
    )


async def run_bulk_job(job_id: str, request: BulkRequest) -> None:
    """
    Background task running one bulk analysis.

    Args:
        job_id: Unique job identifier
        request: Bulk analysis request
    """
    def on_progress(update: BulkAnalysisProgress) -> None:
        job = jobs[job_id]
        job["status"] = "processing"
        job["stage"] = update.stage
        job["progress"] = update.progress
        job["message"] = update.message
        job["processed_count"] = update.processed_count
        job["total_count"] = update.total_count

    try:
        result = await transaction_service.analyze_bulk(
            request.transactions,
            all_transactions=request.all_transactions,
            options=request.options,
            progress_callback=on_progress,
        )
        jobs[job_id]["status"] = "completed"
        jobs[job_id]["result"] = result.model_dump(mode="json")
        logger.info(f"Job {job_id} completed successfully")

    except ClassificationServiceError as e:
        logger.error(f"Job {job_id} failed with service error: {e}", exc_info=True)
        jobs[job_id]["status"] = "failed"
        jobs[job_id]["message"] = f"Analysis failed: {e.message}"
        jobs[job_id]["error"] = e.message
        jobs[job_id]["error_details"] = e.details

    except Exception as e:
        logger.error(f"Job {job_id} failed with unexpected error: {e}", exc_info=True)
        jobs[job_id]["status"] = "failed"
        jobs[job_id]["message"] = f"Analysis failed: {str(e)}"
        jobs[job_id]["error"] = str(e)


@app.post("/classify/bulk", status_code=202)
async def classify_bulk(request: BulkRequest, background_tasks: BackgroundTasks):
    """
    Start a background bulk analysis.
    Returns immediately with a job ID for status polling.
    """
    job_id = str(uuid.uuid4())
    jobs[job_id] = {
        "job_id": job_id,
        "status": "queued",
        "stage": None,
        "message": "Bulk analysis queued",
        "created_at": datetime.now(timezone.utc).isoformat(),
        "progress": 0,
        "processed_count": 0,
        "total_count": len(request.transactions),
    }
    background_tasks.add_task(run_bulk_job, job_id, request)

    logger.info(f"Job {job_id} queued for {len(request.transactions)} transactions")

    return {
        "job_id": job_id,
        "status": "accepted",
        "message": "Analysis started. Use job_id to check status."
    }


@app.get("/status/{job_id}")
async def get_job_status(job_id: str):
    """
    Get status of a bulk analysis job.

    Args:
        job_id: Job identifier

    Returns:
        Job status, progress and (when finished) the result or error
    """
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="Job not found")

    job = jobs[job_id]

    response = {
        "job_id": job_id,
        "status": job["status"],
        "stage": job.get("stage"),
        "progress": job.get("progress", 0),
        "message": job["message"],
        "processed_count": job.get("processed_count", 0),
        "total_count": job.get("total_count", 0),
        "created_at": job.get("created_at"),
    }

    if job["status"] == "completed" and "result" in job:
        response["result"] = job["result"]

    if job["status"] == "failed":
        response["error"] = job.get("error")
        if "error_details" in job:
            response["error_details"] = job["error_details"]

    return response


@app.post("/duplicates", response_model=DuplicateDetectionResult)
async def detect_duplicates(request: DuplicatesRequest):
    return transaction_service.duplicate_detector.detect_duplicates(request.transactions)


@app.post("/readiness", response_model=ProcessingDecision)
async def evaluate_readiness(request: ReadinessRequest):
    """Recommend auto-export, targeted review or full review for an extracted statement."""
    classifications = request.classifications
    if classifications is None:
        classifications = await transaction_service.aclassify_transactions(
            request.extraction.transactions, timeout=settings.openai_timeout
        )
    return transaction_service.confidence_engine.evaluate_processing_readiness(
        request.extraction, classifications
    )


@app.get("/settings/thresholds", response_model=ConfidenceThresholds)
async def get_thresholds():
    return transaction_service.confidence_engine.get_thresholds()


@app.put("/settings/thresholds", response_model=ConfidenceThresholds)
async def update_thresholds(changes: Dict[str, Any]):
    return transaction_service.confidence_engine.update_thresholds(**changes)


@app.get("/settings/duplicates", response_model=DuplicateDetectionSettings)
async def get_duplicate_settings():
    return transaction_service.duplicate_detector.get_settings()


@app.put("/settings/duplicates", response_model=DuplicateDetectionSettings)
async def update_duplicate_settings(changes: Dict[str, Any]):
    return transaction_service.duplicate_detector.update_settings(**changes)


@app.get("/rules", response_model=List[Rule])
async def list_rules():
    return transaction_service.cascade.get_user_rules()


@app.post("/rules", response_model=Rule, status_code=201)
async def add_rule(rule: Rule):
    """Add (or replace) a user rule. Cached classifications are dropped."""
    transaction_service.cascade.add_user_rule(rule)
    return rule


@app.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(rule_id: str):
    if not transaction_service.cascade.remove_user_rule(rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")


@app.post("/remote/enable")
async def enable_remote():
    """Leave fallback mode after a remote classifier outage."""
    cascade = transaction_service.cascade
    if cascade.client is None:
        raise ConfigurationError(
            "Remote classifier is not configured",
            details={"required_key": "OPENAI_API_KEY"},
        )
    cascade.enable_remote()
    return {"fallback_mode": cascade.fallback_mode}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
