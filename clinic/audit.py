from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select

from .billing_models import AuditAction, AuditEntityType, AuditLog
from .db import db_session


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _diff(old: dict | None, new: dict | None) -> dict | None:
    if not old or not new:
        return None
    changes = {
        k: {"old": old.get(k), "new": v}
        for k, v in new.items()
        if old.get(k) != v
    }
    return changes or None


def _record(
    s,
    entity_type: AuditEntityType,
    entity_id: str,
    action: AuditAction,
    identifier: str | None = None,
    old: dict | None = None,
    new: dict | None = None,
    performed_by: str | None = None,
    extra: dict | None = None,
) -> AuditLog:
    old, new = _jsonable(old), _jsonable(new)
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        entity_identifier=identifier,
        action=action,
        old_values=old,
        new_values=new,
        changes=_diff(old, new),
        extra=_jsonable(extra),
        performed_by=performed_by,
    )
    s.add(log)
    return log


def audit_flat(a: AuditLog) -> dict:
    return {
        "id": a.id,
        "entity_type": a.entity_type.value,
        "entity_id": a.entity_id,
        "entity_identifier": a.entity_identifier,
        "action": a.action.value,
        "old_values": a.old_values,
        "new_values": a.new_values,
        "changes": a.changes,
        "extra": a.extra,
        "performed_by": a.performed_by,
        "created_at": a.created_at,
    }


def list_audit_logs(
    entity_type: AuditEntityType | None = None,
    entity_id: str | None = None,
    action: AuditAction | None = None,
    performed_by: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    conds = []
    if entity_type:
        conds.append(AuditLog.entity_type == entity_type)
    if entity_id:
        conds.append(AuditLog.entity_id == entity_id)
    if action:
        conds.append(AuditLog.action == action)
    if performed_by:
        conds.append(AuditLog.performed_by == performed_by)
    if date_from:
        conds.append(AuditLog.created_at >= datetime.combine(date_from, datetime.min.time()))
    if date_to:
        conds.append(AuditLog.created_at <= datetime.combine(date_to, datetime.max.time()))

    page = max(page, 1)
    with db_session() as s:
        total = s.scalar(select(func.count(AuditLog.id)).where(*conds)) or 0
        rows = s.scalars(
            select(AuditLog).where(*conds).order_by(AuditLog.id.desc()).offset((page - 1) * limit).limit(limit)
        )
        return {"items": [audit_flat(a) for a in rows], "total": total, "page": page, "limit": limit}


def entity_history(entity_type: AuditEntityType, entity_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.id.asc())
        )
        return [audit_flat(a) for a in rows]
