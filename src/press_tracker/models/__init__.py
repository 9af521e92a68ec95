"""
Database models package.

This package contains all SQLAlchemy ORM models for the application.
"""

from .base import Base, BaseModel, SoftDeleteMixin
from .enums import (
    ACTIVE_BATCH_STATUSES,
    AllocationMode,
    BatchStatus,
    MergeSourceType,
    PressRunStatus,
    VesselStatus,
)
from .vendor import Vendor
from .fruit_variety import FruitVariety
from .purchase_lot import PurchaseLot
from .vessel import Vessel
from .press_run import PressRun, PressRunLoad
from .batch import Batch, BatchComposition
from .batch_merge_history import BatchMergeHistory
from .audit_log import AuditLog

__all__ = [
    "Base",
    "BaseModel",
    "SoftDeleteMixin",
    # Enums
    "ACTIVE_BATCH_STATUSES",
    "AllocationMode",
    "BatchStatus",
    "MergeSourceType",
    "PressRunStatus",
    "VesselStatus",
    # Catalog collaborators
    "Vendor",
    "FruitVariety",
    "PurchaseLot",
    "Vessel",
    # Pressing
    "PressRun",
    "PressRunLoad",
    # Cellar provenance
    "Batch",
    "BatchComposition",
    "BatchMergeHistory",
    # Audit
    "AuditLog",
]
