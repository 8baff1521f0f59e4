# quoteflow/services/numbering.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConcurrentModificationError
from ..models import Job, Quote

log = logging.getLogger("quoteflow.numbering")

T = TypeVar("T")


def _now() -> datetime:
    return datetime.utcnow()


def format_quote_number(year: int, seq: int) -> str:
    return f"Q-{int(year)}-{int(seq):03d}"


def format_job_number(year: int, seq: int) -> str:
    return f"JOB-{int(year)}-{int(seq):04d}"


def _parse_seq(number: str, prefix: str) -> Optional[int]:
    if not number or not number.startswith(prefix):
        return None
    tail = number[len(prefix):]
    return int(tail) if tail.isdigit() else None


def _max_seq(db: Session, column, tenant_column, *, tenant_id: int, prefix: str) -> int:
    # compared numerically: "Q-2026-1000" sorts before "Q-2026-999" as text
    numbers = db.scalars(
        select(column).where(tenant_column == int(tenant_id), column.like(f"{prefix}%"))
    ).all()
    seqs = [s for s in (_parse_seq(n, prefix) for n in numbers) if s is not None]
    return max(seqs) if seqs else 0


def _insert_numbered(
    db: Session,
    *,
    entity: str,
    column,
    tenant_column,
    tenant_id: int,
    prefix: str,
    fmt: Callable[[int], str],
    build: Callable[[str], T],
) -> T:
    """
    Read max + 1, insert inside a savepoint, retry on a uniqueness race.

    The candidate never goes below the last one tried, so a snapshot that
    cannot see the competing row still moves forward.
    """
    floor = 0
    attempts = max(1, int(settings.number_allocation_retries))
    for attempt in range(1, attempts + 1):
        seq = max(_max_seq(db, column, tenant_column, tenant_id=tenant_id, prefix=prefix), floor) + 1
        floor = seq
        number = fmt(seq)
        row = build(number)

        sp = db.begin_nested()
        try:
            db.add(row)
            db.flush()
        except IntegrityError:
            sp.rollback()
            taken = db.scalar(select(column).where(tenant_column == int(tenant_id), column == number))
            if taken is None:
                # conflict on some other unique key (e.g. a second job for the same quote)
                raise ConcurrentModificationError(entity) from None
            log.info(
                "number_taken_retrying",
                extra={"event": "number_retry", "tenant_id": tenant_id, "attempt": attempt},
            )
            continue
        sp.commit()
        return row

    raise ConcurrentModificationError(entity)


def insert_quote_with_number(db: Session, *, tenant_id: int, build: Callable[[str], Quote]) -> Quote:
    year = _now().year
    return _insert_numbered(
        db,
        entity="quote",
        column=Quote.quote_number,
        tenant_column=Quote.tenant_id,
        tenant_id=tenant_id,
        prefix=f"Q-{year}-",
        fmt=lambda seq: format_quote_number(year, seq),
        build=build,
    )


def insert_job_with_number(db: Session, *, tenant_id: int, build: Callable[[str], Job]) -> Job:
    year = _now().year
    return _insert_numbered(
        db,
        entity="job",
        column=Job.job_number,
        tenant_column=Job.tenant_id,
        tenant_id=tenant_id,
        prefix=f"JOB-{year}-",
        fmt=lambda seq: format_job_number(year, seq),
        build=build,
    )
