"""Domain models for the employer spreadsheet import.

Candidates and snapshots flow through the matcher and reconciler; result and
error records are what the operator (and the error log) finally sees.
"""

from .candidate import CONTACT_FIELDS, Candidate, ConflictInfo, Disposition
from .employer import ExistingEmployer
from .error_record import ErrorRecord
from .reconcile_result import PreviewSummary, ReconcileResult, ResultAccumulator

__all__ = [
    # Import rows
    "CONTACT_FIELDS",
    "Candidate",
    "ConflictInfo",
    "Disposition",
    # Store snapshot
    "ExistingEmployer",
    # Results
    "ErrorRecord",
    "PreviewSummary",
    "ReconcileResult",
    "ResultAccumulator",
]
