import random

import pytest

from duostack.errors import CycleError, GraphError, UnresolvedReferenceError
from duostack.graph.models import Format, Ref, ResourceDescriptor, ResourceKind
from duostack.graph.planner import (
    build_graph,
    creation_order,
    parallel_batches,
    plan,
    teardown_order,
)
from duostack.observers.dispatcher import EventBus
from duostack.observers.events import PlanComputed, PlanFailed

N = ResourceKind.COMPUTE_NODE


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


def _d(rid, attrs=None, deps=()):
    return ResourceDescriptor(rid, N, attrs or {}, depends_on=tuple(deps))


def test_references_imply_edges_and_ties_follow_declaration_order():
    descs = [
        _d("app", {"peer": Ref("db", "private_ip")}),
        _d("db", {"key": Ref("key", "key_name")}),
        _d("key"),
        _d("vol"),
    ]
    graph = build_graph(descs)
    assert graph.edges["app"] == ("db",)
    assert [d.id for d in creation_order(graph)] == ["key", "db", "app", "vol"]


def test_refs_inside_nested_values_and_format_are_found():
    descs = [
        _d("a"),
        _d("b"),
        _d("c", {"conn": Format("{x}:{y}", x=Ref("a", "ip"), y=3306), "groups": [{"id": Ref("b", "group_id")}]}),
    ]
    graph = build_graph(descs)
    assert set(graph.edges["c"]) == {"a", "b"}


def test_order_is_reproducible():
    descs = [_d("c", deps=["a"]), _d("b", deps=["a"]), _d("a")]
    first = [d.id for d in creation_order(build_graph(descs))]
    second = [d.id for d in creation_order(build_graph(descs))]
    assert first == second == ["a", "c", "b"]


def test_every_resource_comes_after_what_it_references():
    rng = random.Random(7)
    for _ in range(50):
        n = rng.randint(1, 12)
        ids = [f"r{i}" for i in range(n)]
        descs = []
        for i, rid in enumerate(ids):
            earlier = ids[:i]
            refs = {f"a{j}": Ref(t, "x") for j, t in enumerate(rng.sample(earlier, k=min(len(earlier), rng.randint(0, 2))))}
            deps = rng.sample(earlier, k=min(len(earlier), rng.randint(0, 1)))
            descs.append(_d(rid, refs, deps))
        rng.shuffle(descs)

        graph = build_graph(descs)
        order = [d.id for d in creation_order(graph)]
        pos = {rid: i for i, rid in enumerate(order)}
        assert sorted(order) == sorted(ids)
        for d in descs:
            for dep in graph.edges[d.id]:
                assert pos[dep] < pos[d.id]


def test_teardown_is_strict_reverse():
    graph = build_graph([_d("a"), _d("b", {"x": Ref("a", "id")}), _d("c", deps=["b"])])
    assert [d.id for d in teardown_order(graph)] == list(reversed([d.id for d in creation_order(graph)]))


def test_parallel_batches_hold_no_internal_dependencies():
    graph = build_graph([
        _d("key"), _d("pol-a"), _d("pol-b", {"peer": Ref("pol-a", "group_id")}),
        _d("vol"), _d("db", {"k": Ref("key", "n"), "g": Ref("pol-b", "g"), "v": Ref("vol", "v")}),
        _d("app", {"p": Ref("db", "ip")}),
    ])
    batches = [[d.id for d in b] for b in parallel_batches(graph)]
    assert batches == [["key", "pol-a", "vol"], ["pol-b"], ["db"], ["app"]]
    for batch in batches:
        for rid in batch:
            assert not set(graph.edges[rid]) & set(batch)


def test_cycle_names_participants_and_emits_failure():
    descs = [_d("x"), _d("a", {"p": Ref("b", "ip")}), _d("b", deps=["c"]), _d("c", {"p": Ref("a", "ip")})]
    cap = Capture()
    with pytest.raises(CycleError) as ei:
        plan(descs, bus=EventBus([cap]))
    assert set(ei.value.ids) == {"a", "b", "c"}
    assert isinstance(ei.value, GraphError)
    assert any(isinstance(e, PlanFailed) for e in cap.events)
    assert not any(isinstance(e, PlanComputed) for e in cap.events)


def test_self_reference_is_a_cycle():
    with pytest.raises(CycleError):
        build_graph([_d("a", {"me": Ref("a", "ip")})])


def test_unresolved_reference_names_both_ids():
    with pytest.raises(UnresolvedReferenceError) as ei:
        build_graph([_d("app", {"peer": Ref("nope", "private_ip")})])
    assert ei.value.referrer == "app"
    assert ei.value.missing == "nope"


def test_unknown_explicit_dependency():
    with pytest.raises(UnresolvedReferenceError):
        build_graph([_d("app", deps=["db"])])


def test_duplicate_ids_rejected():
    with pytest.raises(GraphError):
        build_graph([_d("a"), _d("a")])


def test_plan_emits_computed_order():
    cap = Capture()
    graph, order = plan([_d("b", deps=["a"]), _d("a")], bus=EventBus([cap]))
    pc = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert pc.order == ["a", "b"] == [d.id for d in order]
