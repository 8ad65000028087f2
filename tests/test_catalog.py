import json

import pytest

from persona_sim.config import get_settings
from persona_sim.personas.catalog import PersonaCatalog


def _write(directory, name, /, **fields):
    data = {"userId": "001", "name": "A", "description": "d", "systemPrompt": "p", **fields}
    (directory / name).write_text(json.dumps(data))


def test_loads_files_sorted_by_name(tmp_path):
    _write(tmp_path, "b.json", userId="002", name="B")
    _write(tmp_path, "a.json", userId="001", name="A")
    catalog = PersonaCatalog.load(tmp_path)
    assert [p.user_id for p in catalog] == ["001", "002"]


def test_numeric_id_follows_user_id(tmp_path):
    _write(tmp_path, "x.json", userId="017")
    assert PersonaCatalog.load(tmp_path).get("017").id == 17


def test_invalid_and_duplicate_files_are_skipped(tmp_path):
    _write(tmp_path, "1.json", userId="001")
    (tmp_path / "2.json").write_text("{not json")
    (tmp_path / "3.json").write_text(json.dumps({"userId": "003"}))  # no systemPrompt
    _write(tmp_path, "4.json", userId="001", name="dupe")
    (tmp_path / "notes.txt").write_text("ignored")
    catalog = PersonaCatalog.load(tmp_path)
    assert len(catalog) == 1
    assert catalog.get("001").name == "A"


def test_missing_directory_gives_empty_catalog(tmp_path):
    assert len(PersonaCatalog.load(tmp_path / "nope")) == 0


def test_reload_returns_fresh_catalog(tmp_path):
    _write(tmp_path, "1.json", userId="001")
    catalog = PersonaCatalog.load(tmp_path)
    _write(tmp_path, "2.json", userId="002")
    assert len(catalog) == 1
    assert len(catalog.reload()) == 2


def test_reload_without_source_raises():
    with pytest.raises(ValueError):
        PersonaCatalog([]).reload()


def test_bundled_catalog_has_thirty_unique_personas():
    catalog = PersonaCatalog.load(get_settings().personas_dir)
    assert len(catalog) == 30
    assert [p.user_id for p in catalog] == [f"{i:03d}" for i in range(1, 31)]
    assert all(p.system_prompt and p.price_range for p in catalog)
