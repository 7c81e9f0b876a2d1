"""Enqueue and Status entry points used by the CRUD layer."""

from typing import Optional

from .errors import AlreadyActiveError, JobNotFoundError
from .queue_manager import JobQueueManager
from .schemas import AnalysisRequest, EnqueueResponse, GapView, JobStatusView


def analyze(manager: JobQueueManager, request: AnalysisRequest) -> EnqueueResponse:
    """
    Enqueue analysis for a media item.

    Without ``force_reanalysis`` an already active job is reported as a
    conflict carrying that job's id; with it the active job is superseded.
    """
    try:
        job_id = manager.enqueue(
            request.media_ref,
            priority=request.priority,
            force_reanalysis=request.force_reanalysis,
            reject_if_active=not request.force_reanalysis,
            session_context=request.session_context,
        )
    except AlreadyActiveError as e:
        return EnqueueResponse(job_id=e.job_id, conflict=True)
    return EnqueueResponse(job_id=job_id, conflict=False)


def job(manager: JobQueueManager, job_id: str, include_report: bool = True) -> JobStatusView:
    """
    Current state, completeness and gaps; the best report so far when asked.

    Jobs no longer held in memory are answered from their persisted
    finalization record.

    Raises:
        JobNotFoundError: neither the queue nor the report store knows the job.
    """
    try:
        current = manager.get_status(job_id)
    except JobNotFoundError:
        record = manager.report_store.get(job_id)
        if record is None:
            raise
        return JobStatusView(
            job_id=record.job_id,
            media_ref=record.media_ref,
            state=record.final_state,
            completeness_score=record.completeness_score,
            gaps=record.gaps,
            report=record.report if include_report else None,
            superseded_by=record.superseded_by,
            error=record.error,
        )
    report: Optional[dict] = None
    if include_report and current.report is not None:
        report = current.report.to_dict()
    return JobStatusView(
        job_id=current.id,
        media_ref=current.media_ref,
        state=current.state.value,
        completeness_score=round(current.completeness_score, 4),
        gaps=[GapView(**g.to_dict()) for g in current.gaps],
        report=report,
        attempts_used=current.attempts_used,
        superseded_by=current.superseded_by,
        error=current.error,
    )
