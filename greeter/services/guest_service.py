from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from greeter.db.models import Guest
from greeter.observability.tracing import CorrelationContext


def replace_guest(db: Session, name: str, ctx: CorrelationContext, log: Any) -> Guest | None:
    """Supersede any live record for ``name`` with a fresh one.

    The soft delete and the insert share one transaction. Store errors are
    logged and rolled back; the caller still answers the request.
    """

    span = ctx.child("guests.replace")
    now = datetime.now(timezone.utc)
    try:
        result = db.execute(
            update(Guest)
            .where(Guest.name == name, Guest.deleted_at.is_(None))
            .values(deleted_at=now, updated_at=now)
        )
        guest = Guest(name=name, created_at=now, updated_at=now)
        db.add(guest)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("guest.replace_failed", name=name, error=str(exc), **span.log_fields())
        return None

    log.debug(
        "guest.replaced",
        name=name,
        guest_id=guest.id,
        superseded=result.rowcount,
        elapsed_ms=round(span.elapsed_ms(), 2),
        **span.log_fields(),
    )
    return guest


def count_live_guests(db: Session, name: str) -> int:
    stmt = select(func.count()).select_from(Guest).where(Guest.name == name, Guest.deleted_at.is_(None))
    return int(db.execute(stmt).scalar_one())
