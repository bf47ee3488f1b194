"""Module pricing lookups."""

from .catalog import PriceLookup, StaticPriceCatalog
from .models import BillingPeriod, ModulePrice, add_billing_period

__all__ = [
    "BillingPeriod",
    "ModulePrice",
    "PriceLookup",
    "StaticPriceCatalog",
    "add_billing_period",
]
