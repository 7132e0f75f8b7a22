"""Tests for the JSON file property store."""

import json

from bulkexport.lib.properties import JsonFilePropertyStore


class TestJsonFilePropertyStore:
    """Tests for get/set/delete semantics and on-disk layout."""

    def test_missing_key_is_none(self, tmp_path):
        store = JsonFilePropertyStore(tmp_path / "state")
        assert store.get("lastMaxUID") is None

    def test_set_and_get(self, tmp_path):
        store = JsonFilePropertyStore(tmp_path / "state")
        store.set("lastMaxUID", "102")
        assert store.get("lastMaxUID") == "102"

    def test_persists_across_instances(self, tmp_path):
        JsonFilePropertyStore(tmp_path / "state").set("token", "abc")
        assert JsonFilePropertyStore(tmp_path / "state").get("token") == "abc"

    def test_file_layout(self, tmp_path):
        store = JsonFilePropertyStore(tmp_path / "state")
        store.set("lastMaxUID", "7")

        data = json.loads((tmp_path / "state" / "properties.json").read_text())
        assert data["properties"] == {"lastMaxUID": "7"}
        assert "updated_at" in data

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFilePropertyStore(tmp_path)
        store.set("a", "1")
        store.set("b", "2")
        assert [p.name for p in tmp_path.iterdir()] == ["properties.json"]

    def test_delete(self, tmp_path):
        store = JsonFilePropertyStore(tmp_path)
        store.set("a", "1")
        store.set("b", "2")
        store.delete("a")
        store.delete("never-set")
        assert store.get("a") is None
        assert store.get("b") == "2"

    def test_delete_all(self, tmp_path):
        store = JsonFilePropertyStore(tmp_path)
        store.set("a", "1")
        store.delete_all()
        assert store.get("a") is None
        assert not (tmp_path / "properties.json").exists()

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        (tmp_path / "properties.json").write_text("{not json")
        store = JsonFilePropertyStore(tmp_path)
        assert store.get("a") is None
        store.set("a", "1")
        assert store.get("a") == "1"
