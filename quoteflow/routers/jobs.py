from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal, require_contractor
from ..db import get_db
from ..schemas import AreaProgressUpdate, CustomerSelectionsSave, JobComplete, JobReason, JobSchedule
from ..services.job_service import (
    CustomerSelection,
    area_progress_summary,
    cancel_job,
    close_job,
    complete_job,
    get_job,
    hold_job,
    job_to_dict,
    list_jobs,
    pause_job,
    resume_job,
    save_customer_selections,
    schedule_job,
    start_job,
    submit_customer_selections,
    update_area_progress,
)
from ..services.notifications import dispatch_in_new_session

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=list[dict])
def get_jobs(
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    return [job_to_dict(j) for j in list_jobs(db, tenant_id=p.tenant_id, status=status, limit=limit)]


@router.get("/{job_id}", response_model=dict)
def get_one(job_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return job_to_dict(get_job(db, tenant_id=p.tenant_id, job_id=job_id))


@router.get("/{job_id}/progress", response_model=dict)
def get_progress(job_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return area_progress_summary(db, tenant_id=p.tenant_id, job_id=job_id)


@router.post("/{job_id}/schedule", response_model=dict)
def post_schedule(
    job_id: int,
    payload: JobSchedule,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    job = schedule_job(
        db,
        tenant_id=p.tenant_id,
        job_id=job_id,
        start_date=payload.scheduled_start_date,
        end_date=payload.scheduled_end_date,
        crew=payload.crew,
        reason=payload.reason,
        actor_user_id=p.user_id,
    )
    background.add_task(dispatch_in_new_session)
    return job_to_dict(job)


@router.post("/{job_id}/start", response_model=dict)
def post_start(job_id: int, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return job_to_dict(start_job(db, tenant_id=p.tenant_id, job_id=job_id, actor_user_id=p.user_id))


@router.put("/{job_id}/areas/{area_id}", response_model=dict)
def put_area_progress(
    job_id: int,
    area_id: str,
    payload: AreaProgressUpdate,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    job = update_area_progress(
        db, tenant_id=p.tenant_id, job_id=job_id, area_id=area_id, status=payload.status, actor_user_id=p.user_id
    )
    return job_to_dict(job)


@router.post("/{job_id}/complete", response_model=dict)
def post_complete(
    job_id: int,
    payload: JobComplete,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    job = complete_job(
        db,
        tenant_id=p.tenant_id,
        job_id=job_id,
        completion_notes=payload.completion_notes,
        final_invoice_amount=payload.final_invoice_amount,
        actor_user_id=p.user_id,
    )
    background.add_task(dispatch_in_new_session)
    return job_to_dict(job)


@router.post("/{job_id}/close", response_model=dict)
def post_close(job_id: int, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return job_to_dict(close_job(db, tenant_id=p.tenant_id, job_id=job_id, actor_user_id=p.user_id))


@router.post("/{job_id}/hold", response_model=dict)
def post_hold(job_id: int, payload: JobReason, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return job_to_dict(hold_job(db, tenant_id=p.tenant_id, job_id=job_id, reason=payload.reason, actor_user_id=p.user_id))


@router.post("/{job_id}/pause", response_model=dict)
def post_pause(job_id: int, payload: JobReason, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return job_to_dict(pause_job(db, tenant_id=p.tenant_id, job_id=job_id, reason=payload.reason, actor_user_id=p.user_id))


@router.post("/{job_id}/resume", response_model=dict)
def post_resume(job_id: int, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return job_to_dict(resume_job(db, tenant_id=p.tenant_id, job_id=job_id, actor_user_id=p.user_id))


@router.post("/{job_id}/cancel", response_model=dict)
def post_cancel(job_id: int, payload: JobReason, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return job_to_dict(cancel_job(db, tenant_id=p.tenant_id, job_id=job_id, reason=payload.reason, actor_user_id=p.user_id))


# ---- Customer portal ----


@router.put("/{job_id}/selections", response_model=dict)
def put_selections(
    job_id: int,
    payload: CustomerSelectionsSave,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    selections = [CustomerSelection(**s.model_dump()) for s in payload.selections]
    job = save_customer_selections(
        db, tenant_id=p.tenant_id, job_id=job_id, selections=selections, actor_user_id=p.user_id
    )
    return job_to_dict(job)


@router.post("/{job_id}/selections/submit", response_model=dict)
def post_submit_selections(job_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return job_to_dict(submit_customer_selections(db, tenant_id=p.tenant_id, job_id=job_id, actor_user_id=p.user_id))
