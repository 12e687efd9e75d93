from .notifications import NotificationCenter


class Clock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestNotificationCenter:
    def test_persistent_rate_limited(self):
        clock = Clock()
        sent = []
        center = NotificationCenter(sink=sent.append, clock=clock)

        assert center.send("srtla", "error", "first", 5, persistent=True)
        assert not center.send("srtla", "error", "second", 5, persistent=True)
        clock.now += 1.5
        assert center.send("srtla", "error", "third", 5, persistent=True)

        assert [m["show"][0]["msg"] for m in sent] == ["first", "third"]

    def test_non_persistent_always_delivered(self):
        sent = []
        center = NotificationCenter(sink=sent.append, clock=Clock())
        center.send("start_error", "error", "a", 10)
        center.send("start_error", "error", "b", 10)
        assert len(sent) == 2
        assert not center.exists("start_error")

    def test_exists_until_expired(self):
        clock = Clock()
        center = NotificationCenter(clock=clock)
        center.send("srtla", "error", "x", 5, persistent=True)
        assert center.exists("srtla")
        clock.now += 6
        assert not center.exists("srtla")

    def test_remove_broadcasts_once(self):
        sent = []
        center = NotificationCenter(sink=sent.append, clock=Clock())
        center.send("netif_dup_ip", "error", "dup", persistent=True)
        center.remove("netif_dup_ip")
        center.remove("netif_dup_ip")
        assert sent[-1] == {"remove": ["netif_dup_ip"]}
        assert len(sent) == 2

    def test_snapshot_reports_remaining_time(self):
        clock = Clock()
        center = NotificationCenter(clock=clock)
        center.send("encoder", "error", "stall", 5, persistent=True)
        center.send("asrc", "error", "forever", 0, persistent=True)
        clock.now += 2
        snap = {n["name"]: n for n in center.persistent_snapshot()}
        assert snap["encoder"]["duration"] == 3
        assert snap["asrc"]["duration"] == 0

    def test_failing_sink_is_contained(self):
        def sink(_msg):
            raise RuntimeError("socket closed")

        center = NotificationCenter(sink=sink, clock=Clock())
        assert center.send("x", "warning", "still ok")
