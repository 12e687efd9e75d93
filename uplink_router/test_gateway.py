import subprocess

from .conftest import raw
from .dns_cache import ResolveResult
from .gateway import GatewayController, GatewayState, RouteTable
from .interfaces import InterfaceMonitor


class StubResolver:
    def __init__(self, addrs=("142.250.1.1",), from_cache=False):
        self.result = ResolveResult(tuple(addrs), from_cache) if addrs else None
        self.validated = []

    def resolve(self, hostname, rrtype=None):
        return self.result

    def validate(self, hostname):
        self.validated.append(hostname)
        return True


class Probe:
    def __init__(self, working=()):
        self.working = set(working)
        self.calls = []

    def __call__(self, addr, domain, source_ip):
        self.calls.append(source_ip)
        return source_ip in self.working


class IpCommands:
    def __init__(self):
        self.calls = []
        self.deletes_left = 2

    def __call__(self, argv, **kwargs):
        self.calls.append(argv[1:])
        if argv[1:3] == ["route", "show"]:
            table = argv[4]
            return subprocess.CompletedProcess(argv, 0, stdout=f"default via 10.0.{table[-1]}.1 dev {table}\n", stderr="")
        if argv[1:3] == ["route", "del"]:
            if self.deletes_left:
                self.deletes_left -= 1
                return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")
            return subprocess.CompletedProcess(argv, 2, stdout="", stderr="RTNETLINK answers: No such process")
        return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")


def make_gateway(notifications, probe, resolver=None, ifaces=None):
    ifaces = ifaces if ifaces is not None else [raw("eth0", "10.0.0.5"), raw("usb1", "10.0.1.5")]
    monitor = InterfaceMonitor(reader=lambda: ifaces)
    monitor.poll()
    ip = IpCommands()
    gateway = GatewayController(
        monitor,
        resolver or StubResolver(),
        notifications,
        "www.gstatic.com",
        probe=probe,
        routes=RouteTable(run=ip),
        executor=lambda fn: fn(),
    )
    return gateway, ip


class TestScheduling:
    def test_many_requests_one_check(self, notifications):
        probe = Probe(working={None})
        gateway, _ = make_gateway(notifications, probe)
        for _ in range(5):
            gateway.queue_check()

        assert gateway.tick(100.0)
        assert not gateway.tick(103.0)
        assert probe.calls == [None]
        assert gateway.state == GatewayState.IDLE

    def test_failed_check_is_requeued_after_interval(self, notifications):
        probe = Probe(working=())
        gateway, _ = make_gateway(notifications, probe)
        assert gateway.tick(100.0)
        assert gateway.state == GatewayState.QUEUED
        assert not gateway.tick(101.0)
        assert gateway.tick(102.0)

    def test_no_overlapping_checks(self, notifications):
        pending = []
        gateway, _ = make_gateway(notifications, Probe(working={None}))
        gateway.executor = pending.append
        assert gateway.tick(100.0)
        gateway.queue_check()
        assert gateway.state == GatewayState.CHECKING
        assert not gateway.tick(110.0)
        pending.pop()()
        assert gateway.state == GatewayState.QUEUED
        assert gateway.tick(120.0)


class TestFailover:
    def test_default_route_ok_validates_dns(self, notifications):
        resolver = StubResolver()
        gateway, ip = make_gateway(notifications, Probe(working={None}), resolver)
        assert gateway.check()
        assert resolver.validated == ["www.gstatic.com"]
        assert ip.calls == []

    def test_cached_answer_not_validated(self, notifications):
        resolver = StubResolver(from_cache=True)
        gateway, _ = make_gateway(notifications, Probe(working={None}), resolver)
        assert gateway.check()
        assert resolver.validated == []

    def test_switches_to_first_working_interface(self, notifications, sent):
        probe = Probe(working={"10.0.1.5"})
        gateway, ip = make_gateway(notifications, probe)
        assert gateway.check()

        assert probe.calls == [None, "10.0.0.5", "10.0.1.5"]
        assert ["route", "show", "table", "usb1", "default"] in ip.calls
        assert ip.calls.count(["route", "del", "default"]) == 3
        assert ip.calls[-1] == ["route", "add", "default", "via", "10.0.1.1", "dev", "usb1"]
        assert sent[0]["show"][0]["name"] == "no_internet"

    def test_nothing_works_routes_untouched(self, notifications):
        gateway, ip = make_gateway(notifications, Probe(working=()))
        assert not gateway.check()
        assert ip.calls == []

    def test_errored_interfaces_not_probed(self, notifications):
        probe = Probe(working=())
        ifaces = [raw("eth0", "10.0.0.5"), raw("wlan0", "10.0.0.5"), raw("usb1", "10.0.1.5")]
        gateway, _ = make_gateway(notifications, probe, ifaces=ifaces)
        gateway.check()
        assert probe.calls == [None, "10.0.1.5"]

    def test_unresolvable_domain(self, notifications):
        probe = Probe(working={None})
        gateway, _ = make_gateway(notifications, probe, StubResolver(addrs=()))
        assert not gateway.check()
        assert probe.calls == []
