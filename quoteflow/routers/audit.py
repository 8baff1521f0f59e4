from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, require_contractor
from ..db import get_db
from ..domain.audit import entry_to_dict, list_audit_entries
from ..schemas import AuditLogEntryOut

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=list[AuditLogEntryOut])
def list_audit(
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    rows = list_audit_entries(
        db, tenant_id=p.tenant_id, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit
    )
    return [entry_to_dict(r) for r in rows]
