import json

import pytest

from casehub.catalog import ProductCatalog, map_rarity
from casehub.config import ItemRarity


def _write(path, skins, last_sync="2026-01-01T00:00:00Z"):
    path.write_text(json.dumps({"lastSync": last_sync, "skins": skins}))


@pytest.fixture
def catalog_path(tmp_path):
    path = tmp_path / "skins.json"
    _write(path, [
        {
            "id": "skin-1",
            "name": "AK-47 | Redline",
            "market_hash_name": "AK-47 | Redline (Field-Tested)",
            "rarity": {"id": "rarity_legendary"},
            "category": {"name": "Rifles"},
            "image": "https://img.example/ak.png",
        },
        {
            "id": "skin-2",
            "name": "AWP | Asiimov",
            "market_hash_name": "AWP | Asiimov (Field-Tested)",
            "rarity": {"id": "rarity_ancient"},
            "category": {"name": "Sniper Rifles"},
        },
        {"id": "broken-record"},
    ])
    return path


def test_load_and_lookup(catalog_path):
    catalog = ProductCatalog(catalog_path)
    assert catalog.load() == 2
    assert len(catalog) == 2
    assert catalog.last_sync == "2026-01-01T00:00:00Z"

    by_name = catalog.lookup("AK-47 | Redline (Field-Tested)")
    assert by_name.catalog_id == "skin-1"
    assert by_name.rarity == ItemRarity.CLASSIFIED
    assert catalog.lookup("skin-2").display_name == "AWP | Asiimov"
    assert catalog.lookup("missing") is None

    assert [i.catalog_id for i in catalog.by_category("rifles")] == ["skin-1"]
    assert [i.catalog_id for i in catalog.by_rarity(ItemRarity.COVERT)] == ["skin-2"]


def test_unknown_rarity_defaults_to_lowest_tier():
    assert map_rarity("rarity_unheard_of") == ItemRarity.CONSUMER
    assert map_rarity(None) == ItemRarity.CONSUMER
    assert map_rarity("Rarity_Mythical") == ItemRarity.RESTRICTED


def test_bad_reload_keeps_previous_index(catalog_path):
    catalog = ProductCatalog(catalog_path)
    catalog.load()

    _write(catalog_path, [])
    assert catalog.reload() == 2
    catalog_path.write_text("{not json")
    assert catalog.reload() == 2
    catalog_path.unlink()
    assert catalog.reload() == 2
    assert catalog.lookup("skin-1") is not None


def test_reload_swaps_in_new_index(catalog_path):
    catalog = ProductCatalog(catalog_path)
    catalog.load()
    _write(catalog_path, [
        {"id": "skin-9", "market_hash_name": "Glock-18 | Fade (Factory New)", "rarity": {"id": "rarity_rare"}},
    ], last_sync="2026-02-01T00:00:00Z")

    assert catalog.reload() == 1
    assert catalog.lookup("skin-1") is None
    glock = catalog.lookup("Glock-18 | Fade (Factory New)")
    assert glock.display_name == "Glock-18 | Fade (Factory New)"
    assert glock.rarity == ItemRarity.MIL_SPEC
    assert catalog.last_sync == "2026-02-01T00:00:00Z"
