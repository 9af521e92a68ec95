"""
BatchMergeHistory model: append-only log of juice merged into batches.

Rows are written once and never updated. If the source press run or batch is
later hard-deleted, the database sets the source reference to NULL so the
volume movement history survives removal of its origin record.
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from press_tracker.utils.datetime_utils import utc_now


class BatchMergeHistory(BaseModel):
    """
    One merge of new juice into an existing batch.

    Attributes:
        target_batch_id: Batch that received the juice
        source_type: MergeSourceType value
        source_press_run_id: Press run that produced the juice (nullable)
        source_batch_id: Batch the juice was transferred from (nullable)
        volume_added_l: Net volume added to the target
        target_volume_before_l / target_volume_after_l: Target volume around the merge
        transfer_loss_l: Loss recorded on the way into the vessel
        composition_snapshot: Lot/variety fractions of the target after the merge
        merged_at / merged_by: When and by whom
    """

    __tablename__ = "batch_merge_history"

    target_batch_id = Column(
        Integer, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False
    )
    source_type = Column(String(20), nullable=False)
    source_press_run_id = Column(
        Integer, ForeignKey("press_runs.id", ondelete="SET NULL"), nullable=True
    )
    source_batch_id = Column(
        Integer, ForeignKey("batches.id", ondelete="SET NULL"), nullable=True
    )

    volume_added_l = Column(Float, nullable=False)
    target_volume_before_l = Column(Float, nullable=False)
    target_volume_after_l = Column(Float, nullable=False)
    transfer_loss_l = Column(Float, nullable=False, default=0.0)

    composition_snapshot = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    merged_at = Column(DateTime, nullable=False, default=utc_now)
    merged_by = Column(String(100), nullable=True)

    target_batch = relationship(
        "Batch", back_populates="merge_history", foreign_keys=[target_batch_id]
    )
    source_batch = relationship("Batch", foreign_keys=[source_batch_id])
    source_press_run = relationship("PressRun")

    __table_args__ = (
        Index("idx_merge_history_target_batch", "target_batch_id"),
        Index("idx_merge_history_source_press_run", "source_press_run_id"),
        Index("idx_merge_history_merged_at", "merged_at"),
        CheckConstraint("volume_added_l > 0", name="ck_merge_history_volume_positive"),
        CheckConstraint("transfer_loss_l >= 0", name="ck_merge_history_loss_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"BatchMergeHistory(id={self.id}, target_batch_id={self.target_batch_id}, "
            f"source_press_run_id={self.source_press_run_id}, added={self.volume_added_l})"
        )
