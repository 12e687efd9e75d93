import json

from .relays import RelayRegistry, validate_relays

RELAYS = {
    "bcrp_key": "s3cret",
    "servers": {
        "eu1": {"type": "srtla", "name": "Europe", "addr": "eu.relay.example.com", "port": 5000, "bcrp_port": "5001", "default": True},
        "us1": {"type": "srtla", "name": "US East", "addr": "us.relay.example.com", "port": 5000},
        "bad_type": {"type": "rtmp", "name": "x", "addr": "x", "port": 1935},
        "bad_port": {"type": "srtla", "name": "y", "addr": "y", "port": 70000},
    },
    "accounts": {
        "acc1": {"name": "Main", "ingest_key": "key-main"},
        "acc2": {"name": "Old", "ingest_key": "key-old", "disabled": True},
        "broken": {"name": "no key"},
    },
}


class TestValidate:
    def test_drops_malformed_entries(self):
        out = validate_relays(RELAYS)
        assert set(out["servers"]) == {"eu1", "us1"}
        assert set(out["accounts"]) == {"acc1", "acc2"}
        assert out["servers"]["eu1"]["default"] is True
        assert out["bcrp_key"] == "s3cret"

    def test_requires_a_server(self):
        assert validate_relays({"servers": {}, "accounts": {}}) is None
        assert validate_relays("nope") is None

    def test_non_string_key_rejects_everything(self):
        assert validate_relays(dict(RELAYS, bcrp_key=42)) is None


class TestRegistry:
    def test_update_persists_and_notifies(self, tmp_path):
        registry = RelayRegistry(tmp_path)
        changes = []
        registry.on_change(lambda: changes.append(1))

        assert registry.update(RELAYS)
        assert not registry.update(RELAYS)
        assert changes == [1]
        cached = json.loads((tmp_path / "relays_cache.json").read_text())
        assert set(cached["servers"]) == {"eu1", "us1"}

        assert RelayRegistry(tmp_path).server("eu1")["addr"] == "eu.relay.example.com"

    def test_invalid_update_keeps_cache(self, tmp_path):
        registry = RelayRegistry(tmp_path)
        registry.update(RELAYS)
        assert not registry.update({"servers": {}})
        assert registry.server("us1") is not None

    def test_corrupt_cache_starts_empty(self, tmp_path):
        (tmp_path / "relays_cache.json").write_text("[]")
        registry = RelayRegistry(tmp_path)
        assert registry.get() is None
        assert registry.build_view() == {"servers": {}, "accounts": {}}

    def test_view_with_rtt_badges(self, tmp_path):
        registry = RelayRegistry(tmp_path)
        registry.update(RELAYS)
        view = registry.build_view({"eu1": 42, "us1": 151})
        assert view["servers"]["eu1"] == {"name": "🟢 Europe (42 ms)", "default": True}
        assert view["servers"]["us1"]["name"] == "🔴 US East (151 ms)"
        assert view["accounts"]["acc2"] == {"name": "Old [disabled]", "disabled": True}
        assert registry.build_view()["servers"]["us1"]["name"] == "US East"


class TestConvertManual:
    def test_manual_endpoint_matched_to_relay(self, tmp_path):
        registry = RelayRegistry(tmp_path)
        registry.update(RELAYS)
        cfg = {"relay_server": None, "relay_account": None, "srtla_addr": "EU.relay.example.com", "srtla_port": 5000, "srt_streamid": "key-main"}
        assert registry.convert_manual(cfg)
        assert cfg == {"relay_server": "eu1", "relay_account": "acc1", "srtla_addr": None, "srtla_port": None, "srt_streamid": None}

    def test_unknown_endpoint_left_alone(self, tmp_path):
        registry = RelayRegistry(tmp_path)
        registry.update(RELAYS)
        cfg = {"relay_server": None, "relay_account": None, "srtla_addr": "203.0.113.5", "srtla_port": 5000, "srt_streamid": "abc"}
        assert not registry.convert_manual(dict(cfg))
