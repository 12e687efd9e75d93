import json

from .operators import OperatorNameCache


class TestOperatorNameCache:
    def test_update_persists_changes_only(self, tmp_path):
        cache = OperatorNameCache(tmp_path)
        assert cache.name("26201") is None
        assert cache.update("26201", "Telekom.de")
        assert not cache.update("26201", "Telekom.de")
        assert cache.update("26201", "Telekom")
        assert json.loads((tmp_path / "gsm_operator_cache.json").read_text()) == {"26201": "Telekom"}
        assert OperatorNameCache(tmp_path).name("26201") == "Telekom"

    def test_empty_values_ignored(self, tmp_path):
        cache = OperatorNameCache(tmp_path)
        assert not cache.update("", "Vodafone")
        assert not cache.update("26202", "")
        assert not (tmp_path / "gsm_operator_cache.json").exists()

    def test_corrupt_file_starts_empty(self, tmp_path):
        (tmp_path / "gsm_operator_cache.json").write_text('{"26203": 7, "26207": "O2"')
        assert OperatorNameCache(tmp_path).name("26207") is None

    def test_malformed_entries_dropped(self, tmp_path):
        (tmp_path / "gsm_operator_cache.json").write_text(json.dumps({"26203": 7, "26207": "O2"}))
        cache = OperatorNameCache(tmp_path)
        assert cache.name("26203") is None
        assert cache.name("26207") == "O2"
