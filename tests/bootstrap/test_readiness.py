import pytest

from duostack.bootstrap.readiness import MysqlProbe, ReadinessPoller, TcpProbe
from duostack.errors import DependencyUnavailableError


class ScriptedProbe:
    def __init__(self, ready_on):
        self.ready_on = ready_on
        self.calls = []

    def __call__(self, address, port):
        self.calls.append((address, port))
        return len(self.calls) >= self.ready_on


def test_ready_on_third_attempt_waits_three_intervals():
    sleeps = []
    probe = ScriptedProbe(ready_on=3)
    attempt = ReadinessPoller(10, 30, sleep=sleeps.append).wait(probe, "10.0.1.11", 3306)
    assert attempt == 3
    assert sleeps == [10, 10, 10]
    assert probe.calls == [("10.0.1.11", 3306)] * 3


def test_gives_up_after_exactly_max_attempts():
    sleeps = []
    probe = ScriptedProbe(ready_on=10**6)
    seen = []
    poller = ReadinessPoller(10, 30, sleep=sleeps.append, on_attempt=lambda n, ok: seen.append((n, ok)))
    with pytest.raises(DependencyUnavailableError) as ei:
        poller.wait(probe, "10.0.1.11", 3306)
    assert len(probe.calls) == 30
    assert sum(sleeps) == 300
    assert ei.value.attempts == 30
    assert seen[-1] == (30, False)


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        ReadinessPoller(1, 0)


def test_tcp_probe_false_on_refused_port():
    # port 9 on an unroutable test address never answers within the timeout
    assert TcpProbe(timeout=0.2)("192.0.2.1", 9) is False


def test_mysql_probe_false_when_connect_fails(monkeypatch):
    import pymysql

    def boom(**kw):
        raise pymysql.err.OperationalError(2003, "Can't connect")

    monkeypatch.setattr(pymysql, "connect", boom)
    assert MysqlProbe("app", "pw", "appdb")("10.0.1.11", 3306) is False


def test_mysql_probe_true_after_select(monkeypatch):
    import pymysql

    class Cursor:
        def __enter__(self): return self
        def __exit__(self, *a): return False
        def execute(self, q): self.q = q
        def fetchone(self): return (1,)

    class Conn:
        closed = False
        def cursor(self): return Cursor()
        def close(self): Conn.closed = True

    captured = {}

    def connect(**kw):
        captured.update(kw)
        return Conn()

    monkeypatch.setattr(pymysql, "connect", connect)
    assert MysqlProbe("app", "pw", "appdb")("10.0.1.11", 3306) is True
    assert captured["user"] == "app" and captured["database"] == "appdb"
    assert Conn.closed
