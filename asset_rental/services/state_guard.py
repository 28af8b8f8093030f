from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from asset_rental.services.errors import ConcurrencyConflict, NotFound, StateConflict


def _primary_key(model: type) -> Any:
    return model.__mapper__.primary_key[0]


def load_for_update(db: Session, model: type, entity_id: int, entity_name: str) -> Any:
    """Re-read a row inside the current transaction, locking it where the dialect can."""
    pk = _primary_key(model)
    row = db.execute(
        select(model)
        .where(pk == entity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if row is None:
        raise NotFound(entity_name, entity_id)
    return row


def claim_transition(
    db: Session,
    entity: Any,
    transition: str,
    allowed_from: Iterable[Any],
    target: Any | None,
    entity_name: str,
    now: datetime | None = None,
) -> None:
    """Move ``entity.Status`` to ``target`` with a compare-and-set on status and version.

    ``target=None`` keeps the status and only claims the row version. Exactly
    one of two racing callers wins; the loser gets StateConflict when the
    status moved underneath it, ConcurrencyConflict otherwise.
    """
    allowed = set(allowed_from)
    observed = entity.Status
    if observed not in allowed:
        raise StateConflict(observed, transition)

    model = type(entity)
    pk = _primary_key(model)
    entity_id = getattr(entity, pk.key)
    next_status = observed if target is None else target
    next_version = int(entity.Version or 0) + 1
    stamp = now or datetime.now()

    result = db.execute(
        update(model)
        .where(pk == entity_id)
        .where(model.Status == observed)
        .where(model.Version == entity.Version)
        .values(Status=next_status, Version=next_version, UpdatedDate=stamp)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = db.execute(select(model.Status).where(pk == entity_id)).scalar_one_or_none()
        if current is None:
            raise NotFound(entity_name, entity_id)
        if current != observed:
            raise StateConflict(current, transition)
        raise ConcurrencyConflict(entity_name, entity_id)

    set_committed_value(entity, "Status", next_status)
    set_committed_value(entity, "Version", next_version)
    set_committed_value(entity, "UpdatedDate", stamp)
