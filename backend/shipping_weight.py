# backend/shipping_weight.py

"""
Shipping weight derivation for multi-unit carts.

Weight per supplier unit comes from product.attributes.weight_kg when present,
otherwise from the category's unit table. The customer's selected unit is
weighed through the same table the price conversion uses, so the two can
never drift apart.

Results are integer grams, the unit the RajaOngkir cost API expects.
"""

from typing import Any, Dict, Iterable, Optional

from models import CartItem
from unit_conversion_engine import (
    CategoryUnitTable,
    DEFAULT_CATEGORY_UNITS,
    DEFAULT_WEIGHT_KG,
    apply_precision,
    apply_product_attributes,
    normalize_unit,
    numeric_attribute,
)

# A non-empty cart never quotes below one gram
MIN_SHIPMENT_GRAMS = 1


def product_weight_per_unit(
    category: str,
    attributes: Optional[Dict[str, Any]] = None,
    tables: Optional[Dict[str, CategoryUnitTable]] = None
) -> float:
    """
    Weight in kg of one supplier unit.
    Priority: attributes.weight_kg > category default > 1 kg.
    """
    weight_kg = numeric_attribute(attributes, "weight_kg")
    if weight_kg is not None and weight_kg > 0:
        return weight_kg

    table = (tables if tables is not None else DEFAULT_CATEGORY_UNITS).get(category)
    if table is not None:
        return table.default_weight_kg()
    return DEFAULT_WEIGHT_KG


def weight_per_selected_unit(
    category: str,
    unit: str,
    attributes: Optional[Dict[str, Any]] = None,
    tables: Optional[Dict[str, CategoryUnitTable]] = None
) -> float:
    """
    Weight in kg of one `unit` as the customer selected it.

    - supplier unit, or a unit the table does not know: the product's own weight
    - any other registered unit (kg, ton, zak, meter, pcs...): its fixed table weight
    """
    base_weight_kg = product_weight_per_unit(category, attributes, tables)
    table = (tables if tables is not None else DEFAULT_CATEGORY_UNITS).get(category)
    if table is None:
        return base_weight_kg

    table = apply_product_attributes(table, attributes)
    selected = normalize_unit(unit)
    definition = table.find(selected)
    if definition is None or selected == table.supplier_unit:
        return base_weight_kg
    return definition.weight_kg_per_unit


def weight_of(
    item: CartItem,
    attributes: Optional[Dict[str, Any]] = None,
    tables: Optional[Dict[str, CategoryUnitTable]] = None
) -> int:
    """Total weight of one cart line in grams (never negative)."""
    weight_kg = item.quantity * weight_per_selected_unit(item.category, item.unit, attributes, tables)
    grams, _ = apply_precision(weight_kg * 1000, 0)
    return max(int(grams), 0)


def aggregate(
    items: Iterable[CartItem],
    attributes_by_product_id: Optional[Dict[str, Dict[str, Any]]] = None,
    tables: Optional[Dict[str, CategoryUnitTable]] = None
) -> int:
    """Total cart weight in grams. Order independent; empty cart weighs 0."""
    attributes_by_product_id = attributes_by_product_id or {}
    items = list(items)
    total = sum(
        weight_of(item, attributes_by_product_id.get(item.product_id), tables)
        for item in items
    )
    if items and total < MIN_SHIPMENT_GRAMS:
        return MIN_SHIPMENT_GRAMS
    return total


def format_weight(weight_grams: float) -> str:
    """2500 -> '2.50 kg', 1200000 -> '1.20 ton', 300 -> '300 gram'"""
    weight_kg = weight_grams / 1000

    if weight_kg >= 1000:
        return f"{weight_kg / 1000:.2f} ton"
    if weight_kg >= 1:
        return f"{weight_kg:.2f} kg"
    return f"{weight_grams:.0f} gram"
