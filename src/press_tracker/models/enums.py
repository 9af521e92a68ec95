"""
Enumerations for pressing and cellar tracking.

This module contains enums used across models and services:
- PressRunStatus: Lifecycle of a press run
- AllocationMode: How juice is apportioned across fruit lots
- VesselStatus: Physical state of a fermentation vessel
- BatchStatus: Lifecycle of a batch in the cellar
- MergeSourceType: Origin of juice merged into an existing batch
"""

from enum import Enum


class PressRunStatus(str, Enum):
    """
    Press run lifecycle status.

    Values:
        IN_PROGRESS: Loads may be added, edited and removed
        COMPLETED: Juice allocated to vessels; terminal
        CANCELLED: Abandoned without producing batches; terminal
    """

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AllocationMode(str, Enum):
    """
    Basis for splitting juice across lots.

    Values:
        WEIGHT: Fraction = lot fruit weight / total fruit weight
        SUGAR: Fraction = lot sugar weight (weight * brix / 100) / total sugar weight
    """

    WEIGHT = "weight"
    SUGAR = "sugar"


class VesselStatus(str, Enum):
    """Physical vessel state."""

    AVAILABLE = "available"
    IN_USE = "in_use"
    CLEANING = "cleaning"
    MAINTENANCE = "maintenance"


class BatchStatus(str, Enum):
    """
    Batch lifecycle status.

    FERMENTATION, AGING and CONDITIONING batches are "active": a vessel holding
    one receives merges instead of a new batch.
    """

    FERMENTATION = "fermentation"
    AGING = "aging"
    CONDITIONING = "conditioning"
    COMPLETED = "completed"
    DISCARDED = "discarded"


ACTIVE_BATCH_STATUSES = (
    BatchStatus.FERMENTATION.value,
    BatchStatus.AGING.value,
    BatchStatus.CONDITIONING.value,
)


class MergeSourceType(str, Enum):
    """Where merged juice came from."""

    PRESS_RUN = "press_run"
    BATCH_TRANSFER = "batch_transfer"
