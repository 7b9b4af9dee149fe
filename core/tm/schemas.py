"""
Translation Memory Pydantic Schemas
API validation schemas for TM operations.
"""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field
from enum import Enum


# ==================== ENUMS ====================

class MatchKind(str, Enum):
    EXACT = "exact"   # normalized source hash identical
    FUZZY = "fuzzy"   # composite score >= accept threshold


class ConflictPolicy(str, Enum):
    SKIP_EXISTING = "skip_existing"
    OVERWRITE = "overwrite"


# ==================== ENTRY SCHEMAS ====================

class EntryCreate(BaseModel):
    """Schema for adding/confirming a translation."""
    source_text: str = Field(..., min_length=1)
    target_text: str = Field(..., min_length=1)
    source_language: str = Field(..., min_length=1, max_length=16)
    target_language: str = Field(..., min_length=1, max_length=16)
    domain_context: Optional[str] = Field(None, max_length=255)
    provider_id: Optional[str] = Field(None, max_length=100)
    human_confirmed: bool = False
    quality_score: Optional[float] = Field(None, ge=0.0, le=1.0)


class EntryCorrection(BaseModel):
    """Schema for a manual correction. Quality may go down."""
    target_text: Optional[str] = Field(None, min_length=1)
    quality_score: Optional[float] = Field(None, ge=0.0, le=1.0)


class EntryResponse(BaseModel):
    """Schema for TM entry API response."""
    id: str
    source_text: str
    target_text: str
    source_hash: str
    source_language: str
    target_language: str
    domain_context: Optional[str] = None
    provider_id: Optional[str] = None
    quality_score: Optional[float] = None
    usage_count: int
    created_at: datetime
    last_used_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class EntryListResponse(BaseModel):
    """Paginated entry listing."""
    entries: List[EntryResponse]
    total: int
    page: int
    limit: int


# ==================== LOOKUP SCHEMAS ====================

class LookupRequest(BaseModel):
    """Schema for a TM lookup."""
    source_text: str = Field(..., min_length=1)
    target_language: str = Field(..., min_length=1, max_length=16)
    domain_context: Optional[str] = None
    accept_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    auto_apply_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)


class BatchLookupRequest(BaseModel):
    """Schema for looking up many segments at once."""
    source_texts: List[str] = Field(..., min_length=1, max_length=1000)
    target_language: str = Field(..., min_length=1, max_length=16)
    domain_context: Optional[str] = None


class ScoreBreakdownResponse(BaseModel):
    edit_distance_score: float
    prefix_similarity_score: float
    token_overlap_score: float
    context_boost: float


class MatchResponse(BaseModel):
    """A single match."""
    entry_id: str
    source_text: str
    target_text: str
    target_language: str
    domain_context: Optional[str] = None
    quality_score: Optional[float] = None
    usage_count: int
    similarity_score: float
    match_kind: MatchKind
    auto_applied: bool
    breakdown: ScoreBreakdownResponse


class LookupResponse(BaseModel):
    """Zero or one auto-applicable match plus suggestions."""
    source_text: str
    auto_applied: Optional[MatchResponse] = None
    suggestions: List[MatchResponse] = []


class ApplyRequest(BaseModel):
    """Caller accepted a match."""
    consumer_ref: Optional[str] = Field(None, max_length=255)
    match_confidence: float = Field(1.0, ge=0.0, le=1.0)


class UsageResponse(BaseModel):
    id: str
    entry_id: str
    consumer_ref: Optional[str] = None
    match_confidence: float
    applied_at: datetime

    class Config:
        from_attributes = True


# ==================== STATS ====================

class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    size: int = 0
    max_size: int = 0
    hit_rate: float = 0.0


class TMStats(BaseModel):
    """Aggregate statistics, always computed fresh."""
    total_entries: int = 0
    entries_by_language_pair: Dict[str, int] = {}
    average_quality: Optional[float] = None
    unrated_entries: int = 0
    total_usage: int = 0
    total_reuses: int = 0
    tokens_saved: int = 0
    reuse_rate: float = 0.0
    cache: Optional[CacheStats] = None


# ==================== IMPORT / MAINTENANCE ====================

class ImportErrorDetail(BaseModel):
    index: int
    message: str


class ImportReport(BaseModel):
    """Outcome of a TMX import. Individual bad units never abort the import."""
    total: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: List[ImportErrorDetail] = []
    cancelled: bool = False


class CleanupRequest(BaseModel):
    min_quality: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_age_days: Optional[int] = Field(None, ge=0)
    include_unrated: Optional[bool] = None


class CleanupResponse(BaseModel):
    deleted: int
    min_quality: float
    max_age_days: int


class RehashReport(BaseModel):
    scanned: int = 0
    rehashed: int = 0
    merged: int = 0


class BatchAddResult(BaseModel):
    """Outcome of adding many translations."""
    added: int = 0
    failed: int = 0
    errors: List[str] = []
