"""
Audit event publisher.

Records create/update/delete events for tracked entities in the audit_log
table. Publishing is fire-and-forget: each event is written inside its own
SAVEPOINT so a failed audit insert is logged and discarded without rolling
back the caller's transaction.

Callers should flush their own changes before publishing so the record ids
are known.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from press_tracker.models import AuditLog
from press_tracker.models.base import serialize_value
from press_tracker.services.database import session_scope
from press_tracker.services.logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


def _json_safe(value: Any) -> Any:
    """Walk dicts and lists, serializing each scalar like a model column."""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return serialize_value(value)


def _publish(
    session: Session,
    operation: str,
    table_name: str,
    record_id,
    old_data: Optional[Dict[str, Any]],
    new_data: Optional[Dict[str, Any]],
    actor_id: Optional[str],
    reason: Optional[str],
) -> None:
    try:
        entry = AuditLog(
            table_name=table_name,
            record_id=str(record_id),
            operation=operation,
            old_data=_json_safe(old_data) if old_data is not None else None,
            new_data=_json_safe(new_data) if new_data is not None else None,
            changed_by=actor_id,
            reason=reason,
        )
        with session.begin_nested():
            session.add(entry)
    except (SQLAlchemyError, TypeError, ValueError) as e:
        log_operation(
            logger,
            operation="publish_audit_event",
            outcome="failed",
            level=logging.WARNING,
            table_name=table_name,
            record_id=str(record_id),
            audit_operation=operation,
            error=str(e),
        )


def publish_create(
    session: Session,
    table_name: str,
    record_id,
    data: Dict[str, Any],
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """
    Publish a create event.

    Args:
        session: Session of the enclosing transaction
        table_name: Entity type that was created
        record_id: Primary key of the new row
        data: Payload describing the new row
        actor_id: Acting user
        reason: Optional note
    """
    _publish(session, "create", table_name, record_id, None, data, actor_id, reason)


def publish_update(
    session: Session,
    table_name: str,
    record_id,
    old_data: Optional[Dict[str, Any]],
    new_data: Dict[str, Any],
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Publish an update event with before/after payloads."""
    _publish(session, "update", table_name, record_id, old_data, new_data, actor_id, reason)


def publish_delete(
    session: Session,
    table_name: str,
    record_id,
    data: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Publish a delete event carrying the last known payload."""
    _publish(session, "delete", table_name, record_id, data, None, actor_id, reason)


def get_audit_trail(
    table_name: str,
    record_id,
    *,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    Get audit entries for one record, oldest first.

    Args:
        table_name: Entity type
        record_id: Primary key of the record
        session: Optional database session

    Returns:
        List of audit entry dictionaries
    """
    if session is not None:
        return _get_audit_trail_impl(table_name, record_id, session)
    with session_scope() as session:
        return _get_audit_trail_impl(table_name, record_id, session)


def _get_audit_trail_impl(table_name: str, record_id, session: Session) -> List[Dict[str, Any]]:
    entries = (
        session.query(AuditLog)
        .filter(AuditLog.table_name == table_name, AuditLog.record_id == str(record_id))
        .order_by(AuditLog.id)
        .all()
    )
    return [entry.to_dict() for entry in entries]
