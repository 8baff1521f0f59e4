# quoteflow/domain/audit.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from ..errors import AuditLogImmutableError
from ..models import AuditLogEntry


def _dumps(v: Optional[dict[str, Any]]) -> Optional[str]:
    if v is None:
        return None
    return json.dumps(v, sort_keys=True, default=str)


def audit_write(
    db: Session,
    *,
    tenant_id: int,
    actor_user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Any,
    category: str = "workflow",
    before: Optional[dict[str, Any]] = None,
    after: Optional[dict[str, Any]] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditLogEntry:
    """
    Append one audit row inside the caller's transaction.

    Never commits: the entry lands or rolls back together with the state
    change it describes.
    """
    row = AuditLogEntry(
        tenant_id=int(tenant_id),
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        action=action,
        category=category,
        entity_type=entity_type,
        entity_id=str(entity_id),
        before_json=_dumps(before),
        after_json=_dumps(after),
        metadata_json=_dumps(metadata),
        is_immutable=True,
        created_at=datetime.utcnow(),
    )
    db.add(row)
    db.flush()
    return row


def list_audit_entries(
    db: Session,
    *,
    tenant_id: int,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 200,
) -> list[AuditLogEntry]:
    q = select(AuditLogEntry).where(AuditLogEntry.tenant_id == int(tenant_id))
    if entity_type:
        q = q.where(AuditLogEntry.entity_type == entity_type)
    if entity_id is not None:
        q = q.where(AuditLogEntry.entity_id == str(entity_id))
    if action:
        q = q.where(AuditLogEntry.action == action)
    q = q.order_by(AuditLogEntry.created_at.asc(), AuditLogEntry.id.asc()).limit(max(1, min(int(limit), 1000)))
    return list(db.scalars(q).all())


def entry_to_dict(row: AuditLogEntry) -> dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "actor_user_id": row.actor_user_id,
        "action": row.action,
        "category": row.category,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "before": json.loads(row.before_json) if row.before_json else None,
        "after": json.loads(row.after_json) if row.after_json else None,
        "metadata": json.loads(row.metadata_json) if row.metadata_json else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


# ---- Append-only guards ----


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target) -> None:
    raise AuditLogImmutableError("update")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target) -> None:
    raise AuditLogImmutableError("delete")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_writes(orm_execute_state) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditLogEntry:
        raise AuditLogImmutableError("update" if orm_execute_state.is_update else "delete")
