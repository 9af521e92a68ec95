"""
Merge History Service - append-only log of juice merged into batches.

Rows are written once, inside the transaction that performs the merge, and
are never updated afterwards. The only change ever made to an existing row is
nulling its source reference when the source press run is hard-deleted, so
the volume movement survives removal of its origin record.
"""

from contextlib import nullcontext
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from press_tracker.models import BatchMergeHistory, MergeSourceType
from press_tracker.services import batch_composition_service
from press_tracker.services.database import session_scope
from press_tracker.services.logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


def record_merge(
    session: Session,
    *,
    target_batch_id: int,
    volume_added_l: float,
    target_volume_before_l: float,
    target_volume_after_l: float,
    source_press_run_id: Optional[int] = None,
    source_batch_id: Optional[int] = None,
    transfer_loss_l: float = 0.0,
    composition_snapshot: Optional[List[Dict[str, Any]]] = None,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> BatchMergeHistory:
    """
    Append one merge record inside the caller's transaction.

    Args:
        session: Session of the merging transaction
        target_batch_id: Batch receiving the juice
        volume_added_l: Net volume added
        target_volume_before_l / target_volume_after_l: Target volume around the merge
        source_press_run_id: Press run the juice came from
        source_batch_id: Batch the juice came from (batch transfers)
        transfer_loss_l: Loss on the way into the vessel
        composition_snapshot: Target composition after the merge
        notes: Loss notes or other remarks
        actor_id: Acting user

    Returns:
        The new BatchMergeHistory row (flushed)
    """
    source_type = (
        MergeSourceType.PRESS_RUN.value
        if source_press_run_id is not None
        else MergeSourceType.BATCH_TRANSFER.value
    )
    record = BatchMergeHistory(
        target_batch_id=target_batch_id,
        source_type=source_type,
        source_press_run_id=source_press_run_id,
        source_batch_id=source_batch_id,
        volume_added_l=volume_added_l,
        target_volume_before_l=target_volume_before_l,
        target_volume_after_l=target_volume_after_l,
        transfer_loss_l=transfer_loss_l,
        composition_snapshot=composition_snapshot,
        notes=notes,
        merged_by=actor_id,
    )
    session.add(record)
    session.flush()

    log_operation(
        logger,
        operation="record_merge",
        outcome="success",
        merge_id=record.id,
        target_batch_id=target_batch_id,
        source_press_run_id=source_press_run_id,
        volume_added_l=volume_added_l,
    )
    return record


def get_merge_history(
    batch_id: int, *, session: Optional[Session] = None
) -> List[Dict[str, Any]]:
    """
    Merge records for a target batch, oldest first.

    Raises:
        BatchNotFound: If the batch is missing or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch_composition_service.load_batch(session, batch_id)
        records = (
            session.query(BatchMergeHistory)
            .filter(BatchMergeHistory.target_batch_id == batch_id)
            .order_by(BatchMergeHistory.merged_at, BatchMergeHistory.id)
            .all()
        )
        return [record.to_dict() for record in records]


def get_merges_from_press_run(
    press_run_id: int, *, session: Optional[Session] = None
) -> List[Dict[str, Any]]:
    """Merge records whose juice came from a press run."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        records = (
            session.query(BatchMergeHistory)
            .filter(BatchMergeHistory.source_press_run_id == press_run_id)
            .order_by(BatchMergeHistory.id)
            .all()
        )
        return [record.to_dict() for record in records]


def detach_press_run(session: Session, press_run_id: int) -> int:
    """
    Null the source reference of every record pointing at a press run.

    Called before a press run is hard-deleted. The database FK also sets
    NULL; doing it here keeps the ORM identity map consistent.

    Returns:
        Number of records detached
    """
    count = (
        session.query(BatchMergeHistory)
        .filter(BatchMergeHistory.source_press_run_id == press_run_id)
        .update({BatchMergeHistory.source_press_run_id: None}, synchronize_session="fetch")
    )
    if count:
        log_operation(
            logger,
            operation="detach_press_run",
            outcome="success",
            press_run_id=press_run_id,
            records_detached=count,
        )
    return count
