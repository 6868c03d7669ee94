import json
import logging

from duostack.observers.console import ConsoleObserver
from duostack.observers.dispatcher import EventBus
from duostack.observers.events import PlanComputed, ResourceCreated, ResourceFailed, new_ctx
from duostack.observers.jsonfile import JsonFileObserver
from duostack.observers.logger import LoggerObserver


class Broken:
    def notify(self, ev):
        raise RuntimeError("observer down")


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


def test_new_ctx_reuses_run_id():
    ctx = new_ctx(stack="t", run_id="r-1")
    assert ctx["run_id"] == "r-1" and ctx["stack"] == "t"
    assert ctx["ts"].endswith("Z")


def test_failing_observer_does_not_stop_others():
    cap = Capture()
    EventBus([Broken(), cap]).emit(PlanComputed(order=["a"], **new_ctx(stack="t")))
    assert len(cap.events) == 1


def test_json_file_observer_appends_lines(tmp_path):
    path = tmp_path / "logs" / "run.jsonl"
    ob = JsonFileObserver(path)
    ctx = new_ctx(stack="t", run_id="r-1")
    ob.notify(PlanComputed(order=["key", "db"], **ctx))
    ob.notify(ResourceCreated(name="db", provider_id="i-1", attempts=2, duration_ms=5, **ctx))
    lines = [json.loads(l) for l in path.read_text().splitlines()]
    assert [l["type"] for l in lines] == ["PlanComputed", "ResourceCreated"]
    assert lines[1]["attempts"] == 2 and lines[1]["run_id"] == "r-1"


def test_logger_observer_levels(caplog):
    logger = logging.getLogger("observer-test")
    ob = LoggerObserver(logger)
    ctx = new_ctx(stack="t")
    with caplog.at_level(logging.INFO, logger="observer-test"):
        ob.notify(PlanComputed(order=["a"], **ctx))
        ob.notify(ResourceFailed(name="db", attempts=5, error="throttled", **ctx))
    levels = [r.levelno for r in caplog.records]
    assert levels == [logging.INFO, logging.ERROR]
    assert "ResourceFailed" in caplog.records[1].getMessage()


def test_console_observer_prints_event(capsys):
    ConsoleObserver().notify(PlanComputed(order=["a", "b"], **new_ctx(stack="t")))
    out = capsys.readouterr().out
    assert "PlanComputed stack=t" in out
    assert "order=['a', 'b']" in out
