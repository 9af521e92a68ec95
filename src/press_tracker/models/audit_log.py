"""
AuditLog model for the change event trail.

Each row captures one create/update/delete of a tracked entity with the
before/after payloads and the acting user.
"""

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, String, Text

from .base import BaseModel
from press_tracker.utils.constants import AUDIT_OPERATIONS
from press_tracker.utils.datetime_utils import utc_now


class AuditLog(BaseModel):
    """
    Immutable audit trail entry.

    Attributes:
        table_name: Entity type (table name) that changed
        record_id: Primary key of the changed row
        operation: "create", "update" or "delete"
        old_data / new_data: JSON payloads
        changed_by: Actor identifier
        reason: Free-text note
        changed_at: When the change happened
    """

    __tablename__ = "audit_log"

    table_name = Column(String(100), nullable=False)
    record_id = Column(String(64), nullable=False)
    operation = Column(String(10), nullable=False)
    old_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)
    changed_by = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "operation IN (" + ", ".join(f"'{op}'" for op in AUDIT_OPERATIONS) + ")",
            name="ck_audit_log_operation",
        ),
        Index("idx_audit_log_record", "table_name", "record_id"),
        Index("idx_audit_log_changed_at", "changed_at"),
    )
