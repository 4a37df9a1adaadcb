from __future__ import annotations

from typing import Any

import pytest

from catalog_sync.models.config_models import ImportSettings
from catalog_sync.services.orchestrator import ReconciliationDriver
from conftest import make_xlsx

GENERAL = ["Product ID", "Name", "Style Code", "Description", "Category"]
ATTRIBUTES = ["Style Code", "Attribute Name", "Value"]
BOM = ["Style Code", "Material", "Quantity"]
PROCESSES = ["Style Code", "Process", "Type", "Description"]


def _workbook(general: list[list[Any]], bom: list[list[Any]] | None = None, **extra: list[list[Any]]) -> bytes:
    sheets: dict[str, list[list[Any]]] = {"General": [GENERAL, *general]}
    if bom is not None:
        sheets["BOM"] = [BOM, *bom]
    if "attributes" in extra:
        sheets["Attributes"] = [ATTRIBUTES, *extra["attributes"]]
    if "processes" in extra:
        sheets["Processes"] = [PROCESSES, *extra["processes"]]
    return make_xlsx(sheets)


@pytest.fixture()
def driver(fake_client, resources) -> ReconciliationDriver:
    return ReconciliationDriver(fake_client, resources, ImportSettings())


TWO_PRODUCTS = dict(
    general=[
        [None, "Oxford Shirt", "STY-1", "Cotton", "Shirts"],
        [None, "Chinos", "STY-2", None, "trousers"],
    ],
    bom=[
        ["STY-1", "Cotton Fabric", 1.5],
        ["STY-1", "Metal Button", 4],
        ["STY-2", "cotton fabric", 2],
    ],
    attributes=[["STY-1", "Size", "M"], ["STY-2", "size", "l"]],
    processes=[["STY-1", "Cutting", "Manufacturing", "Cut panels"]],
)


def test_two_products_with_children(driver, fake_client):
    summary = driver.run_import("products", _workbook(**TWO_PRODUCTS), file_name="products.xlsx")

    assert (summary.attempted, summary.succeeded, summary.failed) == (2, 2, 0)
    assert (summary.created, summary.updated) == (2, 0)
    assert summary.errors == ()
    posts = fake_client.writes()
    assert [(m, p) for m, p, _, _ in posts] == [("POST", "products"), ("POST", "products")]
    first, second = (w[3] for w in posts)
    assert first["name"] == "Oxford Shirt"
    assert first["category"] == "c1"
    assert second["category"] == "c2"
    assert first["bom"] == [{"material": "m1", "quantity": 1.5}, {"material": "m2", "quantity": 4.0}]
    assert second["bom"] == [{"material": "m1", "quantity": 2.0}]
    assert first["attributes"] == {"a1": "o1"}
    assert second["attributes"] == {"a1": "o2"}
    assert first["processes"] == [{"process": "p1", "type": "Manufacturing", "description": "Cut panels"}]
    assert second["processes"] == []
    assert "id" not in first


def test_absent_optional_sheet_leaves_field_out(driver, fake_client):
    driver.run_import("products", _workbook([[None, "Shirt", "STY-1", None, "Shirts"]]))
    payload = fake_client.writes()[0][3]
    assert "bom" not in payload
    assert "attributes" not in payload
    assert "processes" not in payload


def test_reimport_updates_instead_of_duplicating(driver, fake_client):
    data = _workbook(**TWO_PRODUCTS)
    driver.run_import("products", data)
    summary = driver.run_import("products", data)
    assert (summary.created, summary.updated) == (0, 2)
    methods = [w[0] for w in fake_client.writes()]
    assert methods == ["POST", "POST", "PATCH", "PATCH"]
    assert len(fake_client.store["products"]) == 2


def test_identifier_wins_over_style_code(driver, fake_client):
    fake_client.store["products"] = [
        {"id": "p-77", "name": "Old", "styleCode": "STY-1"},
        {"id": "p-88", "name": "Other", "styleCode": "STY-9"},
    ]
    driver.run_import("products", _workbook([["p-88", "Renamed", "STY-1", None, "Shirts"]]))
    method, _, ident, payload = fake_client.writes()[0]
    assert (method, ident) == ("PATCH", "p-88")
    assert payload["styleCode"] == "STY-1"


def test_unknown_identifier_falls_back_to_style_code(driver, fake_client):
    fake_client.store["products"] = [{"id": "p-77", "name": "Old", "styleCode": "sty-1"}]
    driver.run_import("products", _workbook([["gone", "Renamed", " STY-1 ", None, "Shirts"]]))
    assert fake_client.writes()[0][:3] == ("PATCH", "products", "p-77")


def test_unresolved_material_fails_only_its_product(driver, fake_client):
    data = _workbook(
        [[None, "Shirt", "STY-1", None, "Shirts"], [None, "Chinos", "STY-2", None, "Trousers"]],
        bom=[["STY-1", "Cotton Fabric", 1], ["STY-2", "Unobtainium", 1]],
    )
    summary = driver.run_import("products", data)
    assert (summary.attempted, summary.succeeded, summary.failed) == (2, 1, 1)
    assert summary.errors == ("Row 3 (STY-2): Material 'Unobtainium' not found in raw-materials",)
    assert len(fake_client.writes()) == 1


def test_unknown_category_falls_back_with_warning(driver, fake_client):
    summary = driver.run_import("products", _workbook([[None, "Hat", "STY-5", None, "Hats"]]))
    assert summary.succeeded == 1
    assert fake_client.writes()[0][3]["category"] == "c1"
    assert summary.warnings == (
        "CategoryResolutionFallback: Row 2 (STY-5): Category 'Hats' not found, using 'Shirts'",
    )


def test_category_fallback_can_be_disabled(fake_client, resources):
    driver = ReconciliationDriver(fake_client, resources, ImportSettings(category_fallback="reject"))
    summary = driver.run_import("products", _workbook([[None, "Hat", "STY-5", None, "Hats"]]))
    assert summary.failed == 1
    assert summary.warnings == ()
    assert fake_client.writes() == []


def test_missing_required_value_and_orphans(driver, fake_client):
    data = _workbook(
        [[None, "Shirt", "STY-1", None, "Shirts"], [None, None, "STY-2", None, "Shirts"]],
        bom=[["STY-1", "Cotton Fabric", 1], ["STY-2", "Cotton Fabric", 1], ["STY-404", "Metal Button", 2]],
    )
    summary = driver.run_import("products", data)
    assert (summary.attempted, summary.succeeded, summary.failed) == (2, 1, 1)
    assert summary.errors == ("Row 3 (STY-2): required column 'Name' is empty",)
    # children of a rejected root row are not orphans
    assert summary.orphaned_child_rows == 1


def test_child_row_failure_fails_owner(driver, fake_client):
    data = _workbook(
        [[None, "Shirt", "STY-1", None, "Shirts"]],
        bom=[["STY-1", None, 1]],
    )
    summary = driver.run_import("products", data)
    assert summary.failed == 1
    assert summary.errors == ("Row 2 (STY-1): BOM row 2: required column 'Material' is empty",)
    assert fake_client.writes() == []


def test_invalid_enum_rejects_row_only(fake_client, resources):
    driver = ReconciliationDriver(fake_client, resources, ImportSettings(max_workers=3))
    header = ["ID", "Attribute Name", "Type", "Values", "Sort Order"]
    data = make_xlsx({"Attributes": [
        header,
        [None, "Color", "radio", "Red", None],
        [None, "Fit", "dropdown", "Slim", None],
        [None, "Fabric", "CHECKBOX", "Cotton, Linen", "x"],
    ]})
    summary = driver.run_import("attributes", data)
    assert (summary.attempted, summary.succeeded, summary.failed) == (3, 2, 1)
    assert summary.errors == (
        "Row 3 (Fit): invalid value 'dropdown' for column 'Type' (allowed: select, radio, checkbox)",
    )
    by_name = {w[3]["name"]: w[3] for w in fake_client.writes()}
    assert set(by_name) == {"Color", "Fabric"}
    assert by_name["Fabric"]["type"] == "checkbox"
    assert by_name["Fabric"]["sortOrder"] == 0
