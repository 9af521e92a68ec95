"""Services package - Business logic layer for Press Tracker.

This package contains all service modules that provide pressing, allocation
and provenance operations.

Architecture:
- Services: Stateless functions organized by domain
- Transactions: Managed via session_scope() context manager
- Exceptions: Consistent error handling via ServiceError hierarchy
- Validation: Input validation before database operations

Service Modules:
- press_run_service: Press runs and their loads
- press_completion_service: Completing a press run and allocating its juice
- allocation_engine: Pure allocation planning and composition reduction
- batch_composition_service: Per-batch provenance ledger
- merge_history_service: Append-only merge log
- naming_service: Press run and batch names

Collaborators:
- purchase_lot_service: Purchase lots and depletion
- vessel_service: Vessel registry
- audit_service: Audit event publisher

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management and database utilities
- logging_utils: Structured operation logging
"""

# Infrastructure
from . import database, exceptions, logging_utils  # noqa: I001

# Service modules
from . import (
    audit_service,
    allocation_engine,
    naming_service,
    purchase_lot_service,
    vessel_service,
    merge_history_service,
    batch_composition_service,
    press_run_service,
    press_completion_service,
)

from .exceptions import (
    ServiceError,
    NotFoundError,
    ConflictError,
    InvalidStateError,
    InternalError,
)

__all__ = [
    "database",
    "exceptions",
    "logging_utils",
    "audit_service",
    "allocation_engine",
    "naming_service",
    "purchase_lot_service",
    "vessel_service",
    "merge_history_service",
    "batch_composition_service",
    "press_run_service",
    "press_completion_service",
    "ServiceError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "InternalError",
]
