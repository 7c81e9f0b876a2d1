from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# Wire models exchanged with the CRUD layer, the report store and webhooks.

class AnalysisRequest(BaseModel):
    """Enqueue request as pushed by the upload layer."""
    media_ref: str = Field(description="Opaque handle of the uploaded session", min_length=1)
    priority: int = Field(default=0, description="Higher is dequeued sooner")
    force_reanalysis: bool = Field(default=False, description="Supersede an active job for the same media")
    session_context: Optional[str] = Field(default=None, description="Optional session description for prompts")


class EnqueueResponse(BaseModel):
    job_id: str
    conflict: bool = Field(default=False, description="True when an active job already existed")


class GapView(BaseModel):
    section_id: str
    field_id: str
    cause: str
    attempts_made: int = 0
    terminal: bool = False


class JobStatusView(BaseModel):
    job_id: str
    media_ref: str
    state: str
    completeness_score: float
    gaps: List[GapView] = Field(default_factory=list)
    report: Optional[Dict[str, Dict[str, Any]]] = None
    attempts_used: int = 0
    superseded_by: Optional[str] = None
    error: Optional[str] = None


class FinalizationPayload(BaseModel):
    """Emitted once per job when it reaches Complete, Partial or Failed."""
    job_id: str
    media_ref: str
    final_state: str
    completeness_score: float
    report: Optional[Dict[str, Dict[str, Any]]] = None
    gaps: List[GapView] = Field(default_factory=list)
    superseded_by: Optional[str] = None
    error: Optional[str] = None
    quality: Optional[Dict[str, Any]] = None
    finished_at: Optional[float] = None
