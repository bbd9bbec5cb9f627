# backend/tests/test_shipping_weight.py

import pytest

from models import CartItem
from shipping_weight import (
    aggregate,
    format_weight,
    product_weight_per_unit,
    weight_of,
    weight_per_selected_unit,
)


def make_item(category, unit, quantity, product_id="p-1"):
    return CartItem(
        product_id=product_id,
        name=f"{category} item",
        category=category,
        unit=unit,
        price=1000,
        quantity=quantity,
        stock=1000000,
    )


class TestWeightOf:

    def test_besi_batang_falls_back_to_category_default(self):
        assert weight_of(make_item("Besi", "batang", 3)) == 22200

    def test_besi_batang_with_weight_attribute(self):
        assert weight_of(make_item("Besi", "batang", 10), {"weight_kg": 4.74}) == 47400

    def test_besi_lonjor_scaled_by_length(self):
        item = make_item("Besi", "lonjor", 3)

        assert weight_of(item, {"weight_kg": 7.4, "length_meter": 6}) == 11100

    def test_semen_supplier_unit(self):
        assert weight_of(make_item("Semen", "sak", 2)) == 100000

    def test_semen_units_with_fixed_weight(self):
        assert weight_of(make_item("Semen", "kg", 25)) == 25000
        assert weight_of(make_item("Semen", "ton", 1)) == 1000000
        assert weight_of(make_item("Semen", "zak", 1)) == 40000

    def test_fractional_quantity(self):
        assert weight_of(make_item("Semen", "sak", 0.5)) == 25000

    def test_unknown_category_defaults_to_one_kg(self):
        assert weight_of(make_item("Keramik", "dus", 2)) == 2000

    def test_unknown_unit_uses_base_weight(self):
        assert weight_of(make_item("Semen", "karung", 1)) == 50000

    def test_small_items(self):
        assert weight_of(make_item("Paku", "pcs", 5)) == 50


class TestWeightPerUnit:

    def test_attribute_has_priority(self):
        assert product_weight_per_unit("Semen", {"weight_kg": 40}) == 40

    def test_invalid_attribute_ignored(self):
        assert product_weight_per_unit("Semen", {"weight_kg": "-"}) == 50
        assert product_weight_per_unit("Semen", {"weight_kg": 0}) == 50

    def test_unknown_category(self):
        assert product_weight_per_unit("Keramik") == 1.0

    def test_selected_unit_weights(self):
        assert weight_per_selected_unit("Pipa", "meter") == 0.5
        assert weight_per_selected_unit("Pipa", "batang") == 2
        assert weight_per_selected_unit("Triplek", "Lbr") == 10


class TestAggregate:

    def test_empty_cart_weighs_nothing(self):
        assert aggregate([]) == 0

    def test_sum_and_order_independence(self):
        items = [
            make_item("Semen", "sak", 2, "p-semen"),
            make_item("Besi", "batang", 3, "p-besi"),
            make_item("Paku", "kg", 1.5, "p-paku"),
        ]

        assert aggregate(items) == 100000 + 22200 + 1500
        assert aggregate(list(reversed(items))) == aggregate(items)

    def test_attributes_by_product_id(self):
        items = [make_item("Besi", "batang", 2, "p-besi-8"), make_item("Besi", "batang", 2, "p-besi-12")]
        attributes = {"p-besi-8": {"weight_kg": 4.74}, "p-besi-12": {"weight_kg": 10.66}}

        assert aggregate(items, attributes) == 9480 + 21320

    def test_non_empty_cart_is_never_zero(self):
        assert aggregate([make_item("Paku", "pcs", 0.01)]) == 1


@pytest.mark.parametrize("grams,expected", [
    (300, "300 gram"),
    (2500, "2.50 kg"),
    (1200000, "1.20 ton"),
])
def test_format_weight(grams, expected):
    assert format_weight(grams) == expected
