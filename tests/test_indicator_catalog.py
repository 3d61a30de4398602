"""Tests for the indicator catalog."""

import copy

from qof_engine.models.quality_models import AgeGroup
from qof_engine.services.indicator_catalog import (
    RAW_CATEGORIES,
    RAW_INDICATORS,
    IndicatorCatalog,
    get_indicator_catalog,
)


def _raw(code: str) -> dict:
    return copy.deepcopy(next(entry for entry in RAW_INDICATORS if entry["code"] == code))


def test_full_catalog_loads_every_indicator(catalog):
    assert len(catalog) == 24
    assert catalog.skipped == []
    assert len(catalog.categories()) == 9


def test_every_indicator_links_to_a_known_category(catalog):
    category_ids = {c.id for c in catalog.categories()}
    for indicator in catalog.list_all():
        assert indicator.category_id in category_ids


def test_every_category_has_members(catalog):
    for category in catalog.categories():
        assert catalog.list_by_category(category.id), category.id


def test_lookup_is_case_insensitive(catalog):
    assert catalog.get("hyp008").code == "HYP008"
    assert "af007" in catalog
    assert catalog.get("NOPE001") is None
    assert "NOPE001" not in catalog


def test_list_by_category_keeps_catalog_order(catalog):
    codes = [i.code for i in catalog.list_by_category("hypertension")]
    assert codes == ["HYP008", "HYP009"]
    assert catalog.list_by_category("unknown") == []


def test_category_name_lookup(catalog):
    assert catalog.category_name(catalog.get("AF007")) == "Atrial Fibrillation"
    assert catalog.get_category("smoking").name == "Smoking"


def test_age_bands_and_measurability(catalog):
    assert catalog.get("HYP008").age_group == AgeGroup.UNDER_80
    assert catalog.get("HYP009").age_group == AgeGroup.OVER_80
    assert catalog.get("DM034").age_group == AgeGroup.FORTY_PLUS
    assert not catalog.get("AF007").is_age_gated
    assert not catalog.get("OB002").is_measurable
    assert not catalog.get("ALC001").is_measurable
    assert catalog.get("SMOK002").is_measurable


def test_malformed_entries_are_skipped():
    good = _raw("HYP008")

    bad_target = _raw("HYP009")
    bad_target["target_percent"] = 150

    unknown_category = _raw("AF007")
    unknown_category["category_id"] = "renal"

    duplicate = _raw("HYP008")
    duplicate["name"] = "Second copy"

    bad_rule = _raw("SMOK002")
    bad_rule["threshold"] = {"kind": "telepathy"}

    catalog = IndicatorCatalog(
        raw_indicators=[good, bad_target, unknown_category, duplicate, bad_rule, "not-a-mapping"],
        raw_categories=RAW_CATEGORIES,
    )

    assert [i.code for i in catalog.list_all()] == ["HYP008"]
    assert catalog.get("HYP008").name == good["name"]
    assert catalog.skipped == ["HYP009", "AF007", "HYP008", "SMOK002", "?"]


def test_malformed_category_is_skipped():
    catalog = IndicatorCatalog(
        raw_indicators=[_raw("HYP008")],
        raw_categories=[{"id": "hypertension", "name": "Hypertension"}, {"id": ""}],
    )
    assert [c.id for c in catalog.categories()] == ["hypertension"]
    assert len(catalog) == 1


def test_singleton_is_reused():
    assert get_indicator_catalog() is get_indicator_catalog()
