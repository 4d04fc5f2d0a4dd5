"""Partial product updates merged from several enrichment passes.

Each field of a ``ProductPatch`` is in one of three states:
- ``UNSET``: the pass said nothing about the field, keep the current value
- ``None``: the pass explicitly cleared the field
- any other value: the pass provided a new value
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any

from miner.models import Product


class _Unset:
    _instance = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def _is_empty(value: Any) -> bool:
    if value is UNSET or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (tuple, list)):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class ProductPatch:
    name: Any = UNSET
    description: Any = UNSET
    price: Any = UNSET
    sizes: Any = UNSET
    material: Any = UNSET
    gender: Any = UNSET
    season: Any = UNSET
    category_id: Any = UNSET
    images: Any = UNSET
    is_active: Any = UNSET

    def provided(self) -> dict[str, Any]:
        """Return the fields this patch sets, including explicit clears."""

        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}

    def merge(self, other: "ProductPatch") -> "ProductPatch":
        """Overlay ``other`` on this patch; fields ``other`` leaves unset are kept."""

        return replace(self, **other.provided())

    def fill_missing(self, other: "ProductPatch") -> "ProductPatch":
        """Take values from ``other`` only where this patch has nothing usable."""

        updates = {
            name: value
            for name, value in other.provided().items()
            if _is_empty(getattr(self, name)) and not _is_empty(value)
        }
        return replace(self, **updates)

    def apply(self, product: Product) -> Product:
        provided = self.provided()
        if not provided:
            return product
        return replace(product, **provided)

    def is_empty(self) -> bool:
        return not self.provided()
