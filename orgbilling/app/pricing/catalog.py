"""Price lookup abstractions and an in-memory price catalog."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .models import BillingPeriod, ModulePrice


class PriceLookup(Protocol):
    """Resolves the configured price for a module plan."""

    def lookup_price(
        self,
        module_id: str,
        plan: str,
        billing_period: BillingPeriod,
    ) -> Optional[ModulePrice]:
        ...


class StaticPriceCatalog:
    """Price lookup backed by a fixed set of prices.

    Suitable for tests and local development where the ``module_prices``
    table is not available.
    """

    def __init__(self, prices: Iterable[ModulePrice] = ()) -> None:
        self._prices: Dict[Tuple[str, str, BillingPeriod], ModulePrice] = {}
        for price in prices:
            self.add(price)

    def add(self, price: ModulePrice) -> None:
        self._prices[(price.module_id, price.plan, price.billing_period)] = price

    def remove(self, module_id: str, plan: str, billing_period: BillingPeriod) -> None:
        self._prices.pop((module_id, plan, billing_period), None)

    def lookup_price(
        self,
        module_id: str,
        plan: str,
        billing_period: BillingPeriod,
    ) -> Optional[ModulePrice]:
        return self._prices.get((module_id, plan, BillingPeriod(billing_period)))

    def list_prices(self, module_id: str) -> List[ModulePrice]:
        matching = [price for key, price in self._prices.items() if key[0] == module_id]
        return sorted(matching, key=lambda price: (price.plan, price.billing_period.value))
