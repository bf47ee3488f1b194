"""Module gating backed by entitlement decisions."""
from .enforcement import get_is_super_admin, require_entitlement, require_module_enabled
from .exceptions import FeatureGateError

__all__ = [
    "FeatureGateError",
    "get_is_super_admin",
    "require_entitlement",
    "require_module_enabled",
]
