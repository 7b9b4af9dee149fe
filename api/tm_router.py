"""
Translation Memory API Router
FastAPI endpoints for TM operations.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, File
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from typing import Optional, List, Dict
import logging
import io

from config.settings import settings
from core.tm.exceptions import (
    TMError, TMFormatError, TMNotFoundError, TMStoreError, TMValidationError,
)
from core.tm.gateway import EntryFilter
from core.tm.matcher import MatchThresholds
from core.tm.service import get_tm_service, TMService
from core.tm.schemas import (
    EntryCreate, EntryCorrection, EntryResponse, EntryListResponse,
    LookupRequest, LookupResponse, BatchLookupRequest,
    ApplyRequest, UsageResponse, BatchAddResult,
    TMStats, ImportReport, ConflictPolicy,
    CleanupRequest, CleanupResponse, RehashReport,
)

logger = logging.getLogger(__name__)


def require_tm_enabled() -> None:
    """Refuse TM calls while translation memory is switched off."""
    if not settings.tm_enabled:
        raise HTTPException(status_code=503, detail="Translation memory is disabled")


router = APIRouter(
    prefix="/api/tm",
    tags=["Translation Memory"],
    dependencies=[Depends(require_tm_enabled)],
)


def get_service() -> TMService:
    """Get TM service instance."""
    return get_tm_service()


def _http_error(e: TMError) -> HTTPException:
    """Map TM errors to HTTP status codes."""
    if isinstance(e, TMNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (TMValidationError, TMFormatError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, TMStoreError):
        logger.error(f"TM store error: {e}")
        return HTTPException(status_code=503, detail="Translation memory store unavailable")
    return HTTPException(status_code=500, detail=str(e))


def _thresholds(service: TMService, accept: Optional[float], auto_apply: Optional[float]):
    if accept is None and auto_apply is None:
        return None
    defaults = service.matcher.thresholds
    return MatchThresholds(
        accept=defaults.accept if accept is None else accept,
        auto_apply=defaults.auto_apply if auto_apply is None else auto_apply,
    ).validate()


# =============================================================================
# Lookup
# =============================================================================

@router.post("/lookup", response_model=LookupResponse)
def lookup(request: LookupRequest):
    """
    Find the best match for a segment.

    Returns at most one auto-applicable match plus suggestions.
    """
    service = get_service()
    try:
        thresholds = _thresholds(service, request.accept_threshold, request.auto_apply_threshold)
        result = service.find_best_match(
            request.source_text,
            request.target_language,
            request.domain_context,
            thresholds,
        )
    except TMError as e:
        raise _http_error(e)
    return result.to_response()


@router.post("/lookup/batch", response_model=Dict[str, LookupResponse])
def lookup_batch(request: BatchLookupRequest):
    """Look up many segments against one candidate set."""
    service = get_service()
    try:
        results = service.find_matches_batch(
            request.source_texts, request.target_language, request.domain_context
        )
    except TMError as e:
        raise _http_error(e)
    return {text: result.to_response() for text, result in results.items()}


# =============================================================================
# Entries
# =============================================================================

@router.post("/entries", response_model=EntryResponse)
def add_entry(data: EntryCreate):
    """
    Add or confirm a translation.

    - **human_confirmed**: quality defaults to 1.0 instead of the machine default
    """
    service = get_service()
    try:
        entry = service.add_translation(**data.model_dump())
    except TMError as e:
        raise _http_error(e)
    return EntryResponse.model_validate(entry)


@router.post("/entries/batch", response_model=BatchAddResult)
def add_entries_batch(items: List[EntryCreate]):
    """Add many translations at once."""
    service = get_service()
    try:
        return service.add_translations_batch(items)
    except TMError as e:
        raise _http_error(e)


@router.get("/entries", response_model=EntryListResponse)
def list_entries(
    source_language: Optional[str] = Query(None, description="Filter by source language"),
    target_language: Optional[str] = Query(None, description="Filter by target language"),
    domain_context: Optional[str] = Query(None, description="Filter by context"),
    min_quality: Optional[float] = Query(None, ge=0.0, le=1.0),
    search: Optional[str] = Query(None, description="Search in source and target"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=1000),
):
    """Browse entries, most recently updated first."""
    service = get_service()
    predicate = EntryFilter(
        source_language=source_language,
        target_language=target_language,
        domain_context=domain_context,
        min_quality=min_quality,
        search=search,
    )
    try:
        entries, total = service.list_entries(predicate, page, limit)
    except TMError as e:
        raise _http_error(e)
    return EntryListResponse(
        entries=[EntryResponse.model_validate(e) for e in entries],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/entries/{entry_id}", response_model=EntryResponse)
def get_entry(entry_id: str):
    service = get_service()
    try:
        return EntryResponse.model_validate(service.get_entry(entry_id))
    except TMError as e:
        raise _http_error(e)


@router.patch("/entries/{entry_id}", response_model=EntryResponse)
def correct_entry(entry_id: str, data: EntryCorrection):
    """Manual correction; quality is taken as given and may go down."""
    service = get_service()
    try:
        entry = service.correct_entry(entry_id, **data.model_dump(exclude_unset=True))
    except TMError as e:
        raise _http_error(e)
    return EntryResponse.model_validate(entry)


@router.delete("/entries/{entry_id}")
def delete_entry(entry_id: str):
    service = get_service()
    try:
        service.delete_entry(entry_id)
    except TMError as e:
        raise _http_error(e)
    return {"status": "deleted", "entry_id": entry_id}


@router.post("/entries/{entry_id}/apply", response_model=UsageResponse)
def apply_entry(entry_id: str, data: ApplyRequest):
    """Record that a match was used."""
    service = get_service()
    try:
        _, usage = service.apply_match(entry_id, data.consumer_ref, data.match_confidence)
    except TMError as e:
        raise _http_error(e)
    return UsageResponse.model_validate(usage)


@router.get("/entries/{entry_id}/usage", response_model=List[UsageResponse])
def entry_usage(entry_id: str):
    service = get_service()
    try:
        return [UsageResponse.model_validate(u) for u in service.usage_trace(entry_id)]
    except TMError as e:
        raise _http_error(e)


# =============================================================================
# Statistics
# =============================================================================

@router.get("/stats", response_model=TMStats)
def get_stats():
    """Aggregate statistics, computed on demand."""
    service = get_service()
    try:
        return service.statistics()
    except TMError as e:
        raise _http_error(e)


# =============================================================================
# Import / Export
# =============================================================================

@router.post("/import", response_model=ImportReport)
async def import_tmx(
    file: UploadFile = File(...),
    policy: ConflictPolicy = Query(ConflictPolicy.SKIP_EXISTING),
    merge_usage_on_skip: bool = Query(False),
):
    """
    Import a TMX file.

    Bad units are reported, not fatal; an unparseable document is a 400.
    """
    service = get_service()
    content = await file.read()
    try:
        report = await run_in_threadpool(
            service.import_tmx, content, policy, None, None, merge_usage_on_skip
        )
    except TMError as e:
        raise _http_error(e)
    return report


@router.get("/export")
def export_entries(
    format: str = Query("tmx", description="Export format (tmx, csv)"),
    source_language: Optional[str] = Query(None),
    target_language: Optional[str] = Query(None),
    domain_context: Optional[str] = Query(None),
    min_quality: Optional[float] = Query(None, ge=0.0, le=1.0),
):
    """Export entries as TMX or CSV."""
    service = get_service()
    predicate = EntryFilter(
        source_language=source_language,
        target_language=target_language,
        domain_context=domain_context,
        min_quality=min_quality,
    )

    output = io.StringIO()
    try:
        if format == "tmx":
            service.export_tmx(output, predicate=predicate, source_language=source_language)
            media_type = "application/x-tmx+xml"
        elif format == "csv":
            service.export_csv(output, predicate=predicate)
            media_type = "text/csv"
        else:
            raise HTTPException(status_code=400, detail=f"Unsupported format: {format}")
    except TMError as e:
        raise _http_error(e)

    return StreamingResponse(
        io.BytesIO(output.getvalue().encode("utf-8")),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="translation_memory.{format}"'}
    )


# =============================================================================
# Maintenance
# =============================================================================

@router.post("/cleanup", response_model=CleanupResponse)
def cleanup(request: CleanupRequest):
    """Delete low-quality entries not used within max_age_days."""
    service = get_service()
    min_quality = service.cleanup_min_quality if request.min_quality is None else request.min_quality
    max_age_days = service.cleanup_max_age_days if request.max_age_days is None else request.max_age_days
    try:
        deleted = service.cleanup(min_quality, max_age_days, request.include_unrated)
    except TMError as e:
        raise _http_error(e)
    return CleanupResponse(deleted=deleted, min_quality=min_quality, max_age_days=max_age_days)


@router.post("/maintenance/rehash", response_model=RehashReport)
def rebuild_hashes():
    """Recompute source hashes after a normalizer change."""
    service = get_service()
    try:
        return service.rebuild_hashes()
    except TMError as e:
        raise _http_error(e)


@router.delete("/cache")
def clear_cache():
    service = get_service()
    service.clear_cache()
    return {"status": "cleared"}
