"""
Internal extraction endpoints.

Protected by the X-Internal-API-Key header. Failures inside the pipeline never
surface as 5xx here; callers get the attempt status and operators read the
attempt's event trail.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from pipeline.storage import RecordNotFound
from pipeline.triggers import Pipeline, ScrapeJob, quick_extract

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/_internal", tags=["extraction_internal"])


class ExtractionRequest(BaseModel):
    record_id: Optional[str] = None
    url: Optional[str] = None


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Extraction pipeline not initialized")
    return pipeline


def verify_internal_api_key(
    x_internal_api_key: Optional[str] = Header(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Verify internal API key."""
    expected = pipeline.config.internal_api_key
    if not expected:
        raise HTTPException(
            status_code=503,
            detail="Internal API not configured (INTERNAL_API_KEY not set)"
        )

    if not x_internal_api_key or x_internal_api_key != expected:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing internal API key"
        )

    return True


def _resolve_record_id(pipeline: Pipeline, body: ExtractionRequest) -> str:
    if body.record_id:
        if pipeline.store.get_record(body.record_id) is None:
            raise HTTPException(status_code=404, detail=f"Record {body.record_id} not found")
        return body.record_id
    if body.url:
        record, created = pipeline.store.get_or_create_record(body.url)
        if created:
            logger.info(f"[extraction_api] Created record {record.id} for {body.url}")
        return record.id
    raise HTTPException(status_code=400, detail="record_id or url is required")


@router.post("/extractions")
async def extract_now(
    body: ExtractionRequest,
    pipeline: Pipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_api_key),
):
    """
    Extract a record, waiting at most QUICK_EXTRACTION_TIMEOUT.

    Returns ``pending`` when extraction is still running; a follow-up is queued.
    """
    record_id = _resolve_record_id(pipeline, body)
    return await quick_extract(pipeline, record_id, job=ScrapeJob(pipeline))


@router.post("/extractions/async", status_code=202)
async def extract_later(
    body: ExtractionRequest,
    pipeline: Pipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_api_key),
):
    record_id = _resolve_record_id(pipeline, body)
    ScrapeJob(pipeline).enqueue(record_id)
    return {"status": "queued", "record_id": record_id}


@router.get("/attempts/{attempt_id}")
async def get_attempt(
    attempt_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_api_key),
) -> Dict[str, Any]:
    attempt = pipeline.store.get_attempt(attempt_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail=f"Attempt {attempt_id} not found")
    return attempt.to_dict()


@router.get("/attempts/{attempt_id}/events")
async def list_attempt_events(
    attempt_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_api_key),
) -> List[Dict[str, Any]]:
    if pipeline.store.get_attempt(attempt_id) is None:
        raise HTTPException(status_code=404, detail=f"Attempt {attempt_id} not found")
    return [event.to_dict() for event in pipeline.store.list_events(attempt_id)]


@router.post("/attempts/{attempt_id}/retry")
async def retry_attempt(
    attempt_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_api_key),
):
    """Retry a failed attempt from the step where it failed."""
    try:
        result = await pipeline.retry_service.retry(attempt_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail=f"Attempt {attempt_id} not found")
    except Exception as e:
        # Already recorded on the attempt and reported by the orchestrator
        logger.error(f"[extraction_api] Retry failed attempt={attempt_id}: {e}")
        attempt = pipeline.store.get_attempt(attempt_id)
        return {
            "success": False,
            "error": f"{type(e).__name__}: {e}",
            "attempt_id": attempt_id,
            "attempt_status": attempt.status.value if attempt else None,
        }
    return result.to_dict()
