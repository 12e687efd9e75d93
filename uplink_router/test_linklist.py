from .conftest import raw
from .interfaces import InterfaceMonitor
from .linklist import LinkListBuilder


def make_builder(tmp_path, ifaces):
    monitor = InterfaceMonitor(reader=lambda: ifaces)
    monitor.poll()
    reloads = []
    builder = LinkListBuilder(monitor, tmp_path / "srtla_ips", reload=lambda: reloads.append(1))
    return builder, monitor, reloads


class TestLinkList:
    def test_duplicate_addresses_left_out(self, tmp_path):
        builder, _, reloads = make_builder(
            tmp_path,
            [raw("eth0", "10.0.0.5"), raw("wlan0", "10.0.0.5"), raw("usb0", "10.0.1.5")],
        )
        assert builder.rebuild("relay.example.com") == ["10.0.1.5"]
        assert (tmp_path / "srtla_ips").read_text() == "10.0.1.5\n"
        assert reloads == [1]

    def test_table_order_and_disabled(self, tmp_path):
        builder, monitor, _ = make_builder(
            tmp_path,
            [raw("usb0", "10.64.1.2"), raw("eth0", "192.168.1.20"), raw("usb1", "10.65.3.4")],
        )
        monitor.set_enabled("eth0", "192.168.1.20", False)
        assert builder.build("203.0.113.7") == ["10.64.1.2", "10.65.3.4"]

    def test_local_receiver_uses_same_subnet_only(self, tmp_path):
        builder, _, _ = make_builder(
            tmp_path,
            [raw("usb0", "10.64.1.2", "255.255.255.0"), raw("eth0", "192.168.1.20", "255.255.255.0")],
        )
        assert builder.build("192.168.1.100") == ["192.168.1.20"]
        assert builder.build("192.168.7.100") == []

    def test_empty_list_writes_nothing(self, tmp_path):
        builder, _, reloads = make_builder(tmp_path, [])
        assert builder.rebuild("203.0.113.7") == []
        assert not (tmp_path / "srtla_ips").exists()
        assert reloads == []
