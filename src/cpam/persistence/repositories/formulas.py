"""Formula and contract item catalog.

Formulas and items are authored elsewhere and loaded into the catalog the
orchestrator reads from. Only the in-memory store exists; the catalog is
keyed by tenant like every other repository. Services depend on the
read-only ``FormulaCatalog`` protocol so another store can stand in.
"""

from __future__ import annotations

import threading
from typing import Protocol

from cpam.models.formula_graph import ContractItem, Formula

_in_memory_formulas: dict[tuple[str, str], Formula] = {}
"""(tenant_id, formula_id) -> Formula."""

_in_memory_items: dict[tuple[str, str], ContractItem] = {}
"""(tenant_id, item_id) -> ContractItem."""

_in_memory_lock = threading.Lock()


class FormulaCatalog(Protocol):
    """Read side of the formula catalog used by the batch and proposal services."""

    def get_formula(self, formula_id: str) -> Formula | None: ...

    def list_items(
        self, formula_id: str, contract_id: str | None = None
    ) -> list[ContractItem]: ...


class InMemoryFormulaRepository:
    """Tenant-scoped formula and item catalog.

    Args:
        tenant_id: Owning tenant.
    """

    def __init__(self, tenant_id: str) -> None:
        self._tenant_id = tenant_id

    def save_formula(self, formula: Formula) -> Formula:
        if formula.tenant_id != self._tenant_id:
            raise ValueError(
                f"formula {formula.formula_id} belongs to tenant {formula.tenant_id}, "
                f"not {self._tenant_id}"
            )
        with _in_memory_lock:
            _in_memory_formulas[(self._tenant_id, formula.formula_id)] = formula
        return formula

    def get_formula(self, formula_id: str) -> Formula | None:
        with _in_memory_lock:
            return _in_memory_formulas.get((self._tenant_id, formula_id))

    def save_item(self, item: ContractItem) -> ContractItem:
        if item.tenant_id != self._tenant_id:
            raise ValueError(
                f"item {item.item_id} belongs to tenant {item.tenant_id}, not {self._tenant_id}"
            )
        with _in_memory_lock:
            _in_memory_items[(self._tenant_id, item.item_id)] = item
        return item

    def list_items(self, formula_id: str, contract_id: str | None = None) -> list[ContractItem]:
        """Items priced by ``formula_id``, ordered by item_id.

        Args:
            formula_id: Formula the items reference.
            contract_id: When given, only items of this contract.
        """
        with _in_memory_lock:
            items = [
                item
                for (tenant, _), item in _in_memory_items.items()
                if tenant == self._tenant_id and item.formula_id == formula_id
            ]
        if contract_id is not None:
            items = [i for i in items if i.contract_id == contract_id]
        return sorted(items, key=lambda i: i.item_id)


def clear_in_memory_formula_store() -> None:
    """Clear the in-memory formula catalog. For testing only."""
    with _in_memory_lock:
        _in_memory_formulas.clear()
        _in_memory_items.clear()
