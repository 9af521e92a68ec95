"""
Constants for the Press Tracker application.

This module defines system-wide constants including:
- Application metadata
- Allocation tolerances
- Batch naming parameters
"""

from typing import List

# ============================================================================
# Storage
# ============================================================================

DATABASE_FILENAME = "press_tracker.db"

# ============================================================================
# Allocation Tolerances
# ============================================================================

# Slack allowed when the sum of assigned gross volumes exceeds measured juice
VOLUME_TOLERANCE_L = 0.02

# Slack allowed when a net assignment exceeds a vessel's free capacity
CAPACITY_TOLERANCE_L = 0.001

# Composition ledger: |sum(fraction) - 1| and |sum(volume) - current| bound
FRACTION_TOLERANCE = 1e-6

# A lot is depleted once allocated weight is within this of its input weight
DEPLETION_TOLERANCE_KG = 0.001

# ============================================================================
# Batch Naming
# ============================================================================

# Primary variety must hold at least this share for a single-variety name
PRIMARY_VARIETY_THRESHOLD = 0.60

BLEND_CODE = "BLEND"
UNKNOWN_VARIETY_CODE = "UNKN"
VARIETY_CODE_LENGTH = 4

# Collision suffixes run _2 .. _MAX_BATCH_NAME_SUFFIX
MAX_BATCH_NAME_SUFFIX = 99

# ============================================================================
# Press Run Naming
# ============================================================================

PRESS_RUN_SEQUENCE_WIDTH = 2

# ============================================================================
# Audit
# ============================================================================

AUDIT_OPERATIONS: List[str] = ["create", "update", "delete"]
