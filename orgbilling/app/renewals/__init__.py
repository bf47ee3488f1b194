"""Renewal and trial sweeps run by the periodic billing jobs."""

from .scheduler import RenewalAction, RenewalResult, RenewalRunSummary, RenewalScheduler
from .trials import TrialExpiryJob, TrialRunSummary

__all__ = [
    "RenewalAction",
    "RenewalResult",
    "RenewalRunSummary",
    "RenewalScheduler",
    "TrialExpiryJob",
    "TrialRunSummary",
]
