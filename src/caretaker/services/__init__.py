"""Business logic services."""

from caretaker.services.apply_engine import (
    apply_description_decisions,
    apply_schema_diff,
    approve_proposal,
    batch_approve,
    reject_proposal,
    revert_proposal,
)
from caretaker.services.audit import AuditAction, log_event
from caretaker.services.drift import detect_and_record
from caretaker.services.drift_detector import DetectedDrift, DriftDetector, detect_drift
from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode
from caretaker.services.maintenance_job import run_maintenance_sweep
from caretaker.services.proposal_generator import generate_proposal
from caretaker.services.summaries import drift_summary, proposal_summary

__all__ = [
    "AuditAction",
    "DetectedDrift",
    "DriftDetector",
    "MaintenanceError",
    "MaintenanceErrorCode",
    "apply_description_decisions",
    "apply_schema_diff",
    "approve_proposal",
    "batch_approve",
    "detect_and_record",
    "detect_drift",
    "drift_summary",
    "generate_proposal",
    "log_event",
    "proposal_summary",
    "reject_proposal",
    "revert_proposal",
    "run_maintenance_sweep",
]
