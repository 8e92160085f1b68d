# backend/posync/entities.py
"""
Entity catalogue for the offline sync engine.

Every syncable entity is described once here. Engines, the id resolver, the duplicate
guard and the staging layer are all parameterized by an EntitySpec instead of carrying
per-entity copies of the same logic.

DEPENDENCIES:
    category <- product.categoryId
    product  <- stockin.productId
    stockin  <- stockout.stockinId
    stockout <- sales_return.stockoutId

A dependent entity's adds always run after the adds of everything it references,
because its references are resolved against freshly written id mappings.
"""
from __future__ import annotations

from dataclasses import dataclass

from .validation import ValidationError


@dataclass(frozen=True)
class Reference:
    """A payload field holding the local or server id of another entity."""
    field: str
    entity: str


@dataclass(frozen=True)
class EntitySpec:
    name: str
    plural: str
    endpoint: str
    fields: tuple[str, ...]
    required_on_add: tuple[str, ...] = ()
    numeric_fields: tuple[str, ...] = ()
    duplicate_fields: tuple[str, ...] = ()
    key_fields: tuple[str, ...] = ()
    references: tuple[Reference, ...] = ()
    # Response alias, e.g. {"stockIn": {...}}
    record_key: str | None = None
    group_field: str | None = None
    batch_create: bool = False
    # Body key holding the lines of a batch create
    batch_field: str = "items"
    has_engine: bool = True
    supports_update: bool = True
    supports_delete: bool = True
    shared_fields: tuple[str, ...] = ()

    @property
    def depends_on(self) -> tuple[str, ...]:
        return tuple(ref.entity for ref in self.references)

    def containers(self) -> dict[str, str]:
        """Conceptual container names, used for status reporting."""
        return {
            "all": f"{self.plural}_all",
            "add": f"{self.plural}_offline_add",
            "update": f"{self.plural}_offline_update",
            "delete": f"{self.plural}_offline_delete",
            "mapping": f"synced_{self.name}_ids",
        }


CATEGORY = EntitySpec(
    name="category",
    plural="categories",
    endpoint="/categories",
    fields=("name", "description", "adminId", "employeeId"),
    required_on_add=("name",),
    duplicate_fields=("name", "description"),
    key_fields=("name",),
    record_key="category",
)

PRODUCT = EntitySpec(
    name="product",
    plural="products",
    endpoint="/products",
    fields=("productName", "brand", "categoryId", "description", "adminId", "employeeId"),
    required_on_add=("productName",),
    duplicate_fields=("productName", "brand", "categoryId", "description"),
    key_fields=("productName",),
    references=(Reference("categoryId", "category"),),
    record_key="product",
)

STOCKIN = EntitySpec(
    name="stockin",
    plural="stockins",
    endpoint="/stockin",
    fields=(
        "productId", "quantity", "price", "sellingPrice", "supplier",
        "sku", "barcodeUrl", "adminId", "employeeId",
    ),
    required_on_add=("productId", "quantity"),
    numeric_fields=("quantity", "price", "sellingPrice"),
    duplicate_fields=("productId", "quantity", "price", "sellingPrice", "supplier"),
    key_fields=("productId", "quantity"),
    references=(Reference("productId", "product"),),
    record_key="stockIn",
)

STOCKOUT = EntitySpec(
    name="stockout",
    plural="stockouts",
    endpoint="/stockout",
    fields=(
        "stockinId", "quantity", "soldPrice", "clientName", "clientEmail", "clientPhone",
        "paymentMethod", "transactionId", "backorderLocalId", "isBackOrder", "productName",
        "adminId", "employeeId",
    ),
    required_on_add=("quantity",),
    numeric_fields=("quantity", "soldPrice"),
    duplicate_fields=("stockinId", "quantity", "clientName", "soldPrice"),
    key_fields=("stockinId", "quantity", "clientName", "soldPrice"),
    references=(Reference("stockinId", "stockin"),),
    record_key="stockOut",
    group_field="transactionId",
    batch_create=True,
    batch_field="sales",
    # Sent once per call instead of once per line
    shared_fields=(
        "clientName", "clientEmail", "clientPhone", "paymentMethod",
        "adminId", "employeeId", "transactionId",
    ),
)

SALES_RETURN = EntitySpec(
    name="sales_return",
    plural="sales_returns",
    endpoint="/sales-return",
    fields=("stockoutId", "quantity", "reason", "transactionId", "creditnoteId", "adminId", "employeeId"),
    required_on_add=("stockoutId", "quantity"),
    numeric_fields=("quantity",),
    duplicate_fields=("stockoutId", "quantity", "reason"),
    key_fields=("transactionId", "reason"),
    references=(Reference("stockoutId", "stockout"),),
    record_key="salesReturn",
    group_field="transactionId",
    batch_create=True,
    batch_field="items",
    # The server has no update or delete for returns
    supports_update=False,
    supports_delete=False,
    shared_fields=("transactionId", "reason", "creditnoteId", "adminId", "employeeId"),
)

BACKORDER = EntitySpec(
    name="backorder",
    plural="backorders",
    endpoint="/backorder",
    fields=("quantity", "soldPrice", "productName", "adminId", "employeeId"),
    required_on_add=("productName", "quantity"),
    numeric_fields=("quantity", "soldPrice"),
    record_key="backorder",
    has_engine=False,
    supports_update=False,
    supports_delete=False,
)

ENTITIES: dict[str, EntitySpec] = {
    spec.name: spec for spec in (CATEGORY, PRODUCT, STOCKIN, STOCKOUT, SALES_RETURN, BACKORDER)
}


def get_spec(name: str) -> EntitySpec:
    spec = ENTITIES.get((name or "").strip().lower())
    if spec is None:
        raise ValidationError(f"Unknown entity: {name}")
    return spec


def sync_order() -> list[str]:
    """Entities with an engine, dependencies first."""
    ordered: list[str] = []
    visiting: set[str] = set()

    def visit(name: str) -> None:
        if name in ordered:
            return
        if name in visiting:
            raise ValueError(f"Dependency cycle at entity {name}")
        visiting.add(name)
        for dep in ENTITIES[name].depends_on:
            visit(dep)
        visiting.discard(name)
        ordered.append(name)

    for name, spec in ENTITIES.items():
        if spec.has_engine:
            visit(name)
    return [name for name in ordered if ENTITIES[name].has_engine]


def ancestors_of(name: str) -> list[str]:
    """Every entity `name` transitively depends on, in sync order."""
    needed: set[str] = set()
    stack = list(ENTITIES[name].depends_on)
    while stack:
        dep = stack.pop()
        if dep in needed:
            continue
        needed.add(dep)
        stack.extend(ENTITIES[dep].depends_on)
    return [n for n in sync_order() if n in needed]


def dependents_of(name: str) -> list[tuple[EntitySpec, Reference]]:
    """(spec, reference) pairs whose reference points at entity `name`."""
    out = []
    for spec in ENTITIES.values():
        for ref in spec.references:
            if ref.entity == name:
                out.append((spec, ref))
    return out
