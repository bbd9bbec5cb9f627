# backend/unit_conversion_engine.py

"""
Unit Conversion Engine - Multi-unit selling for building materials

This engine is responsible for:
- Unit normalization via alias mapping
- Per-category unit tables (value conversion and shipping weight)
- Two-hop conversion: source unit -> category base unit -> target unit
- Price and stock derivation in the customer's selected unit
- Validation and error signaling

This engine MUST NOT:
- Modify stock
- Modify orders or carts
- Guess units that are not registered for a category

GLOBAL INVARIANTS (ENFORCED):
1) Every unit factor is strictly positive
2) Units are compared in normalized (lower-case, alias-resolved) form
3) Unknown category -> UnsupportedCategoryError, unknown unit -> UnsupportedUnitError
4) Converting a unit to itself returns the quantity untouched
5) Value conversion and weight per unit live in ONE table per category
"""

from enum import Enum
from typing import Optional, List, Dict, Any, Tuple, Union
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel, Field, field_validator, model_validator
import logging

logger = logging.getLogger(__name__)

# ==================== ENUMS ====================

class ConversionStatus(str, Enum):
    """Conversion result status"""
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


# ==================== UNIT ALIAS MAPPING ====================

UNIT_ALIASES: Dict[str, str] = {
    # Weight
    "kilogram": "kg",
    "kilograms": "kg",
    "kgs": "kg",
    "kilo": "kg",
    "tonne": "ton",
    "tonnes": "ton",
    "tons": "ton",

    # Count / length
    "btg": "batang",
    "lbr": "lembar",
    "m": "meter",
    "pc": "pcs",
    "piece": "pcs",
    "pieces": "pcs",

    # Volume
    "l": "liter",
    "ltr": "liter",
    "litre": "liter",
    "gln": "galon",
    "gallon": "galon",
}

# Weight used when a category has no table at all (never zero, to avoid zero-weight quotes)
DEFAULT_WEIGHT_KG = 1.0

# Standard rebar length the batang weight refers to
STANDARD_BAR_LENGTH_METER = 12.0


# ==================== ERROR CLASSES ====================

class ConversionError(Exception):
    """Base conversion error"""
    def __init__(self, error_code: str, message: str, field: Optional[str] = None):
        self.error_code = error_code
        self.message = message
        self.field = field
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "field": self.field,
        }


class UnsupportedCategoryError(ConversionError):
    """Category has no registered unit table"""
    def __init__(self, category: str):
        super().__init__(
            "UNSUPPORTED_CATEGORY",
            f"Category '{category}' has no unit table. Multi-unit purchase is not available.",
            field="category"
        )


class UnsupportedUnitError(ConversionError):
    """Unit not registered for the category"""
    def __init__(self, unit: str, category: str, allowed_units: List[str]):
        self.unit = unit
        self.allowed_units = allowed_units
        super().__init__(
            "UNSUPPORTED_UNIT",
            f"Unit '{unit}' is not registered for category '{category}'. Allowed units: {', '.join(allowed_units)}",
            field="unit"
        )


class InvalidUnitTableError(ConversionError):
    """Unit table stored for a category is malformed"""
    def __init__(self, category: str, reason: str):
        super().__init__(
            "INVALID_UNIT_TABLE",
            f"Unit table for category '{category}' is invalid: {reason}",
            field="available_units"
        )


def normalize_unit(unit: Optional[str]) -> str:
    """Lower-case, trim and resolve aliases. Empty input stays empty."""
    if not unit:
        return ""
    cleaned = unit.strip().lower()
    return UNIT_ALIASES.get(cleaned, cleaned)


def apply_precision(value: float, decimal_places: int = 2) -> Tuple[float, bool]:
    """
    Round with ROUND_HALF_UP using Decimal.

    Returns:
        Tuple of (rounded_value, was_rounded)
    """
    decimal_value = Decimal(str(value))
    rounded_decimal = decimal_value.quantize(
        Decimal(10) ** -decimal_places,
        rounding=ROUND_HALF_UP
    )
    return (float(rounded_decimal), decimal_value != rounded_decimal)


# ==================== DATA MODELS ====================

class UnitDefinition(BaseModel):
    """One purchasable unit of a category"""
    unit: str
    label: str
    value_conversion_to_base: float = Field(gt=0)
    weight_kg_per_unit: float = Field(gt=0)

    @field_validator("unit")
    @classmethod
    def _normalize(cls, value: str) -> str:
        normalized = normalize_unit(value)
        if not normalized:
            raise ValueError("unit must not be empty")
        return normalized


class CategoryUnitTable(BaseModel):
    """
    Authoritative per-category unit table.

    value_conversion_to_base drives price/stock conversion, weight_kg_per_unit
    drives shipping weight. supplier_unit is the unit products of this category
    are usually stocked in; its weight is the category's default weight.
    """
    category: str
    base_unit: str
    supplier_unit: Optional[str] = None
    conversions: List[UnitDefinition]

    @field_validator("base_unit", "supplier_unit")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return normalize_unit(value) if value is not None else None

    @model_validator(mode="after")
    def _check_units(self):
        units = [c.unit for c in self.conversions]
        if not units:
            raise ValueError(f"category '{self.category}' has no units")
        if len(set(units)) != len(units):
            raise ValueError(f"category '{self.category}' lists a unit twice")
        if self.supplier_unit and self.supplier_unit not in units:
            raise ValueError(f"supplier unit '{self.supplier_unit}' is not in the table")
        return self

    @property
    def units(self) -> List[str]:
        return [c.unit for c in self.conversions]

    def find(self, unit: str) -> Optional[UnitDefinition]:
        normalized = normalize_unit(unit)
        for definition in self.conversions:
            if definition.unit == normalized:
                return definition
        return None

    def require(self, unit: str) -> UnitDefinition:
        definition = self.find(unit)
        if definition is None:
            raise UnsupportedUnitError(unit, self.category, self.units)
        return definition

    def default_weight_kg(self) -> float:
        if self.supplier_unit:
            return self.require(self.supplier_unit).weight_kg_per_unit
        return DEFAULT_WEIGHT_KG


class ConversionResult(BaseModel):
    """Tagged conversion outcome (Ok(value) | error)"""
    status: ConversionStatus
    category: str
    quantity: float
    from_unit: str
    to_unit: str
    value: Optional[float] = None
    base_value: Optional[float] = None
    base_unit: Optional[str] = None
    errors: List[Dict[str, Any]] = []
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    calculation_version: str = "1.0.0"

    @property
    def ok(self) -> bool:
        return self.status == ConversionStatus.SUCCESS


class PurchaseQuote(BaseModel):
    """What a purchase of `quantity` x `unit` means in the product's own unit"""
    category: str
    quantity: float
    unit: str
    product_unit: str
    quantity_in_product_unit: float
    unit_price: float
    total_price: float
    stock_in_product_unit: float
    stock_in_unit: float
    can_purchase: bool


# ==================== DEFAULT TABLES ====================

def _table(category: str, base_unit: str, supplier_unit: str,
           rows: List[Tuple[str, str, float, float]]) -> CategoryUnitTable:
    return CategoryUnitTable(
        category=category,
        base_unit=base_unit,
        supplier_unit=supplier_unit,
        conversions=[
            UnitDefinition(unit=unit, label=label, value_conversion_to_base=value, weight_kg_per_unit=weight)
            for unit, label, value, weight in rows
        ]
    )


# (unit, label, value_conversion_to_base, weight_kg_per_unit)
DEFAULT_CATEGORY_UNITS: Dict[str, CategoryUnitTable] = {
    table.category: table for table in [
        _table("Semen", "kg", "sak", [
            ("sak", "Sak (50kg)", 50, 50),
            ("kg", "Kilogram (kg)", 1, 1),
            ("zak", "Zak (40kg)", 40, 40),
            ("ton", "Ton", 1000, 1000),
        ]),
        _table("Besi", "kg", "batang", [
            ("batang", "Batang (7.4kg)", 7.4, 7.4),
            ("lonjor", "Lonjor (12m)", 7.4, 7.4),
            ("kg", "Kilogram (kg)", 1, 1),
            ("ton", "Ton", 1000, 1000),
        ]),
        _table("Pipa", "batang", "batang", [
            ("batang", "Batang (4m)", 1, 2),
            ("meter", "Meter", 0.25, 0.5),
            ("pcs", "Pcs", 1, 2),
        ]),
        _table("Triplek", "lembar", "lembar", [
            ("lembar", "Lembar", 1, 10),
            ("kg", "Kilogram (kg)", 0.1, 1),
        ]),
        _table("Tangki Air", "unit", "unit", [
            ("unit", "Unit", 1, 5),
            ("pcs", "Pcs", 1, 5),
        ]),
        _table("Kawat", "kg", "gulung", [
            ("gulung", "Gulung (25kg)", 25, 25),
            ("kg", "Kilogram (kg)", 1, 1),
        ]),
        _table("Paku", "kg", "kg", [
            ("kg", "Kilogram (kg)", 1, 1),
            ("pcs", "Pcs (±10g)", 0.01, 0.01),
        ]),
        _table("Baut", "kg", "kg", [
            ("kg", "Kilogram (kg)", 1, 1),
            ("pcs", "Pcs (±20g)", 0.02, 0.02),
            ("set", "Set (±500g)", 0.5, 0.5),
        ]),
        _table("Aspal", "liter", "liter", [
            ("liter", "Liter", 1, 1),
            ("galon", "Galon (20L)", 20, 20),
        ]),
    ]
}


def table_from_document(category_doc: Dict[str, Any]) -> CategoryUnitTable:
    """
    Build a unit table from a `categories` document.

    Expected shape:
        {"name": "Semen", "base_unit": "kg", "supplier_unit": "sak",
         "available_units": [{"value": "sak", "label": "Sak (50kg)",
                              "conversion_rate": 50, "weight_kg": 50}, ...]}

    A unit without weight_kg borrows the built-in weight for that unit, then
    falls back to its conversion rate when the base unit is kg.
    """
    name = category_doc.get("name", "")
    fallback = DEFAULT_CATEGORY_UNITS.get(name)
    base_unit = category_doc.get("base_unit") or (fallback.base_unit if fallback else "")
    supplier_unit = category_doc.get("supplier_unit") or (fallback.supplier_unit if fallback else None)

    conversions = []
    for entry in category_doc.get("available_units") or []:
        unit = normalize_unit(entry.get("value"))
        rate = entry.get("conversion_rate")
        weight = entry.get("weight_kg")
        if weight is None and fallback and fallback.find(unit):
            weight = fallback.find(unit).weight_kg_per_unit
        if weight is None and normalize_unit(base_unit) == "kg":
            weight = rate
        if weight is None:
            weight = DEFAULT_WEIGHT_KG
        conversions.append({
            "unit": unit,
            "label": entry.get("label") or unit,
            "value_conversion_to_base": rate,
            "weight_kg_per_unit": weight,
        })

    if supplier_unit and normalize_unit(supplier_unit) not in [c["unit"] for c in conversions]:
        supplier_unit = None

    try:
        return CategoryUnitTable(
            category=name,
            base_unit=base_unit or (conversions[0]["unit"] if conversions else ""),
            supplier_unit=supplier_unit,
            conversions=conversions
        )
    except ValueError as e:
        raise InvalidUnitTableError(name, str(e))


def apply_product_attributes(
    table: CategoryUnitTable,
    attributes: Optional[Dict[str, Any]] = None
) -> CategoryUnitTable:
    """
    Adjust a category table with product-specific weights.

    Besi: `batang` weighs attributes.weight_kg, `lonjor` scales it by
    length_meter / 12. Kawat: `gulung` weighs attributes.weight_kg.
    Values stay in kg-base, so value and weight factors move together.
    """
    weight_kg = numeric_attribute(attributes, "weight_kg")
    if weight_kg is None or weight_kg <= 0:
        return table

    if table.category == "Besi":
        length_meter = numeric_attribute(attributes, "length_meter") or STANDARD_BAR_LENGTH_METER
        lonjor_kg = weight_kg * (length_meter / STANDARD_BAR_LENGTH_METER)
        overrides = {
            "batang": (f"Batang ({_fmt(weight_kg)}kg)", weight_kg),
            "lonjor": (f"Lonjor ({_fmt(length_meter)}m)", lonjor_kg),
        }
    elif table.category == "Kawat":
        overrides = {"gulung": (f"Gulung ({_fmt(weight_kg)}kg)", weight_kg)}
    else:
        return table

    conversions = []
    for definition in table.conversions:
        if definition.unit in overrides:
            label, kg = overrides[definition.unit]
            definition = definition.model_copy(update={
                "label": label,
                "value_conversion_to_base": kg,
                "weight_kg_per_unit": kg,
            })
        conversions.append(definition)
    return table.model_copy(update={"conversions": conversions})


def allowed_units(
    table: CategoryUnitTable,
    available_units: Optional[List[str]] = None
) -> List[UnitDefinition]:
    """Units of the table the admin enabled for a product (all when none selected)."""
    if not available_units:
        return list(table.conversions)
    enabled = {normalize_unit(u) for u in available_units}
    return [c for c in table.conversions if c.unit in enabled]


def converter_available(
    table: Optional[CategoryUnitTable],
    product_unit: str,
    available_units: Optional[List[str]] = None
) -> bool:
    """False when there is nothing to convert to besides the product's own unit."""
    if table is None:
        return False
    units = allowed_units(table, available_units)
    if not units:
        return False
    return not (len(units) == 1 and units[0].unit == normalize_unit(product_unit))


def numeric_attribute(attributes: Optional[Dict[str, Any]], key: str) -> Optional[float]:
    if not attributes:
        return None
    value = attributes.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _fmt(value: float) -> str:
    return f"{value:g}"


# ==================== UNIT CONVERSION ENGINE ====================

TableRef = Union[str, CategoryUnitTable]


class UnitConversionEngine:
    """
    Stateless unit conversion engine.

    Conversions always go source -> base -> target so each category table
    stays linear in the number of units. Pure arithmetic, safe to share
    between concurrent requests.
    """

    def __init__(self, db=None, tables: Optional[Dict[str, CategoryUnitTable]] = None):
        """
        Initialize engine.

        Args:
            db: MongoDB database instance (for category lookups)
            tables: built-in tables keyed by category name
        """
        self.db = db
        self.tables = tables if tables is not None else DEFAULT_CATEGORY_UNITS
        self.version = "1.0.0"

    def normalize_unit(self, unit: str) -> str:
        return normalize_unit(unit)

    def get_table(self, category: TableRef) -> CategoryUnitTable:
        """
        Resolve a built-in table (or pass an already resolved one through).

        Raises:
            UnsupportedCategoryError: If the category has no table
        """
        if isinstance(category, CategoryUnitTable):
            return category
        table = self.tables.get(category)
        if table is None:
            raise UnsupportedCategoryError(category)
        return table

    async def get_category_by_name(self, name: str) -> Optional[dict]:
        """Pure data fetch, no validation."""
        if self.db is None:
            return None
        return await self.db.categories.find_one({"name": name}, {"_id": 0})

    async def resolve_table(self, category: str) -> CategoryUnitTable:
        """
        Resolve the table for a category: admin-maintained units stored on the
        category document win over the built-in defaults.

        Raises:
            UnsupportedCategoryError: If neither source knows the category
            InvalidUnitTableError: If the stored table is malformed
        """
        category_doc = await self.get_category_by_name(category)
        if category_doc and category_doc.get("available_units"):
            try:
                return table_from_document(category_doc)
            except InvalidUnitTableError as e:
                logger.warning(f"Stored unit table for '{category}' is invalid: {e.message}")
                raise
        return self.get_table(category)

    def convert(self, category: TableRef, quantity: float, from_unit: str, to_unit: str) -> float:
        """
        Convert quantity between two units of one category.

        Zero and negative quantities are converted arithmetically; callers
        enforce positivity before allowing a purchase.

        Raises:
            UnsupportedCategoryError, UnsupportedUnitError
        """
        table = self.get_table(category)
        source = table.require(from_unit)
        target = table.require(to_unit)
        if source.unit == target.unit:
            return quantity

        base_value = quantity * source.value_conversion_to_base
        return base_value / target.value_conversion_to_base

    def try_convert(self, category: TableRef, quantity: float, from_unit: str, to_unit: str) -> ConversionResult:
        """Same as convert() but never raises: returns a tagged ConversionResult."""
        category_name = category.category if isinstance(category, CategoryUnitTable) else category
        try:
            table = self.get_table(category)
            value = self.convert(table, quantity, from_unit, to_unit)
            return ConversionResult(
                status=ConversionStatus.SUCCESS,
                category=category_name,
                quantity=quantity,
                from_unit=normalize_unit(from_unit),
                to_unit=normalize_unit(to_unit),
                value=value,
                base_value=quantity * table.require(from_unit).value_conversion_to_base,
                base_unit=table.base_unit,
                calculation_version=self.version
            )
        except ConversionError as e:
            return ConversionResult(
                status=ConversionStatus.ERROR,
                category=category_name,
                quantity=quantity,
                from_unit=normalize_unit(from_unit),
                to_unit=normalize_unit(to_unit),
                errors=[e.to_dict()],
                calculation_version=self.version
            )

    def price_for(
        self,
        category: TableRef,
        quantity: float,
        from_unit: str,
        product_unit: str,
        unit_price: float
    ) -> float:
        """Price of `quantity` x `from_unit` when unit_price is per product_unit."""
        return self.convert(category, quantity, from_unit, product_unit) * unit_price

    def stock_available(
        self,
        category: TableRef,
        stock_in_product_unit: float,
        product_unit: str,
        target_unit: str
    ) -> float:
        """Stock expressed in target_unit."""
        return self.convert(category, stock_in_product_unit, product_unit, target_unit)

    def quote(
        self,
        category: TableRef,
        quantity: float,
        unit: str,
        product_unit: str,
        unit_price: float,
        stock_in_product_unit: float
    ) -> PurchaseQuote:
        """Everything the product page needs for one purchase in another unit."""
        table = self.get_table(category)
        quantity_in_product_unit = self.convert(table, quantity, unit, product_unit)
        stock_in_unit = self.stock_available(table, stock_in_product_unit, product_unit, unit)
        total_price, _ = apply_precision(quantity_in_product_unit * unit_price, 0)

        return PurchaseQuote(
            category=table.category,
            quantity=quantity,
            unit=normalize_unit(unit),
            product_unit=normalize_unit(product_unit),
            quantity_in_product_unit=quantity_in_product_unit,
            unit_price=unit_price,
            total_price=total_price,
            stock_in_product_unit=stock_in_product_unit,
            stock_in_unit=stock_in_unit,
            can_purchase=quantity > 0 and quantity_in_product_unit <= stock_in_product_unit
        )
