"""
expenseflow/audit.py

Audit trail for every state change of requests, budgets and settings.

Each row keeps:
- the acting user id plus a username snapshot (survives later renames)
- an action tag and the entity type/id it applies to
- structured details and optional before/after column snapshots
- the client IP when recorded during an HTTP request

IMPORTANT:
- record() only adds the row to the session. The caller's unit_of_work()
  commits or rolls it back together with the change it describes.
- A detail value that cannot be stored as JSON is degraded to a string
  and logged; auditing never fails the business operation.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import has_request_context, request

from .extensions import db
from .models import AuditLog

logger = logging.getLogger(__name__)


def _safe_str(value: Any) -> Optional[str]:
    """str() of a column value; repr() when str() itself blows up."""
    if value is None:
        return None
    try:
        return str(value)
    except Exception:
        return repr(value)


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        logger.warning("Audit detail of type %s is not JSON-serialisable; stored as string", type(value).__name__)
        return _safe_str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """Column-name -> string snapshot of a model row (relationships are not followed)."""
    return {column.name: _safe_str(getattr(instance, column.name)) for column in instance.__table__.columns}


def record(
    actor: Any,
    action: str,
    details: Optional[Dict[str, Any]] = None,
    *,
    entity: Any = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an AuditLog entry to the current db session.

    Parameters:
        actor: User performing the action (None for system jobs)
        action: tag such as TRIP_APPROVED / BUDGET_RESERVED
        details: free-form structured payload
        entity: SQLAlchemy instance the action applies to (flushed, has .id)
        before / after: serialize_model() snapshots

    SECURITY NOTE:
    - request.remote_addr is as Flask sees it. Behind a reverse proxy,
      configure ProxyFix / trusted proxy headers to capture real client IP.
    """
    entry = AuditLog(
        user_id=getattr(actor, "id", None),
        username_snapshot=getattr(actor, "username", None),
        action=str(action),
        entity_type=entity.__class__.__name__ if entity is not None else None,
        entity_id=getattr(entity, "id", None) if entity is not None else None,
        details=_json_safe(details) if details else None,
        before_data=_json_safe(before) if before else None,
        after_data=_json_safe(after) if after else None,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)
    return entry


def get_audit_trail(actor_id: Optional[int] = None, limit: Optional[int] = None) -> list[AuditLog]:
    """Audit rows newest first, optionally only those of one actor."""
    query = AuditLog.query
    if actor_id is not None:
        query = query.filter(AuditLog.user_id == actor_id)
    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()
