"""Entitlement models for module access decisions."""

from .models import DenialReason, Entitlement, EntitlementDecision, EntitlementSummary, Module

__all__ = [
    "DenialReason",
    "Entitlement",
    "EntitlementDecision",
    "EntitlementSummary",
    "Module",
]
