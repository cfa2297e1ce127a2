from __future__ import annotations

from typing import Dict, List, Sequence

import pytest

from infra_reconciler.engine.graph import CycleError, DependencyGraph
from infra_reconciler.engine.parser import DeclarationParser
from infra_reconciler.engine.planner import ReconciliationPlanner, changed_attributes
from infra_reconciler.models import (
    OperationType,
    Plan,
    ResourceIdentity,
    StateRecord,
)


@pytest.fixture
def planner() -> ReconciliationPlanner:
    return ReconciliationPlanner()


def _record(key: str, declared: Dict, dependencies: Sequence[str] = (), **outputs) -> StateRecord:
    return StateRecord(
        identity=ResourceIdentity.parse(key),
        declared=dict(declared),
        outputs={"id": f"{key}-id", "path": f"/infra/{key}", **outputs},
        dependencies=list(dependencies),
    )


def _records_for(declaration) -> Dict[str, StateRecord]:
    return {
        r.key: _record(r.key, r.attributes, r.dependency_keys())
        for r in declaration.resources
    }


def _ops(plan: Plan) -> List[tuple]:
    return [(op.type, op.key) for op in plan.operations]


def test_changed_attributes() -> None:
    assert changed_attributes({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == ["b", "c"]
    assert changed_attributes({"a": [1, 2]}, {"a": [1, 2]}) == []


def test_creates_in_dependency_order(planner, chain_declaration) -> None:
    plan = planner.create_plan("run-1", DependencyGraph.build(chain_declaration), {})

    assert _ops(plan) == [
        (OperationType.CREATE, "tier1_gateway.gw"),
        (OperationType.CREATE, "segment.seg"),
        (OperationType.CREATE, "virtual_machine.vm"),
    ]
    gw, seg, vm = plan.operations
    assert gw.dependencies == []
    assert seg.dependencies == [gw.id]
    assert vm.dependencies == [seg.id]
    assert all(op.reason == "not in state" for op in plan.operations)
    assert plan.counts() == {"create": 3, "update": 0, "delete": 0}


def test_matching_state_yields_empty_plan(planner, chain_declaration) -> None:
    graph = DependencyGraph.build(chain_declaration)
    plan = planner.create_plan("run-1", graph, _records_for(chain_declaration))

    assert plan.is_empty
    assert plan.unchanged == graph.topological_order()


def test_changed_attribute_plans_update(planner, chain_declaration) -> None:
    records = _records_for(chain_declaration)
    records["segment.seg"].declared["subnet"] = "10.9.9.0/24"

    plan = planner.create_plan("run-1", DependencyGraph.build(chain_declaration), records)

    assert _ops(plan) == [(OperationType.UPDATE, "segment.seg")]
    op = plan.operations[0]
    assert op.changed_attributes == ["subnet"]
    assert op.reason == "attributes changed: subnet"
    assert op.prior.outputs == records["segment.seg"].outputs
    assert plan.unchanged == ["tier1_gateway.gw", "virtual_machine.vm"]


def test_changed_dependencies_plan_update(planner, parser: DeclarationParser) -> None:
    declaration = parser.parse(
        "resources:\n  gw:\n    a: {}\n  seg:\n    s:\n      depends_on: [gw.a]\n"
    )
    records = {
        "gw.a": _record("gw.a", {}),
        "seg.s": _record("seg.s", {}),
    }
    plan = planner.create_plan("run-1", DependencyGraph.build(declaration), records)
    assert _ops(plan) == [(OperationType.UPDATE, "seg.s")]
    assert plan.operations[0].reason == "dependencies changed"


def test_drift_plans_update_and_missing_plans_create(planner, chain_declaration) -> None:
    records = _records_for(chain_declaration)
    drift = {
        "segment.seg": {**records["segment.seg"].outputs, "subnet": "edited"},
        "tier1_gateway.gw": None,
    }

    plan = planner.create_plan(
        "run-1", DependencyGraph.build(chain_declaration), records, drift=drift
    )

    assert _ops(plan) == [
        (OperationType.CREATE, "tier1_gateway.gw"),
        (OperationType.UPDATE, "segment.seg"),
    ]
    gw, seg = plan.operations
    assert gw.reason == "missing from remote"
    assert seg.reason == "drift detected"
    assert seg.dependencies == [gw.id]
    assert plan.unchanged == ["virtual_machine.vm"]


def test_recreated_dependency_updates_dependent(planner, chain_declaration) -> None:
    records = _records_for(chain_declaration)
    del records["tier1_gateway.gw"]

    plan = planner.create_plan("run-1", DependencyGraph.build(chain_declaration), records)

    assert _ops(plan) == [
        (OperationType.CREATE, "tier1_gateway.gw"),
        (OperationType.UPDATE, "segment.seg"),
    ]
    assert plan.operations[1].reason == "dependency recreated: tier1_gateway.gw"


def test_removed_resources_deleted_dependents_first(planner, parser: DeclarationParser) -> None:
    records = {
        "tier1_gateway.gw": _record("tier1_gateway.gw", {}),
        "segment.seg": _record("segment.seg", {}, ["tier1_gateway.gw"]),
        "virtual_machine.vm": _record("virtual_machine.vm", {}, ["segment.seg"]),
    }
    declaration = parser.parse("resources: {}\n")

    plan = planner.create_plan("run-1", DependencyGraph.build(declaration), records)

    assert _ops(plan) == [
        (OperationType.DELETE, "virtual_machine.vm"),
        (OperationType.DELETE, "segment.seg"),
        (OperationType.DELETE, "tier1_gateway.gw"),
    ]
    vm, seg, gw = plan.operations
    assert vm.dependencies == []
    assert seg.dependencies == [vm.id]
    assert gw.dependencies == [seg.id]
    assert all(op.reason == "removed from declaration" for op in plan.operations)
    assert gw.prior.key == "tier1_gateway.gw"


def test_delete_waits_for_update_of_former_dependent(planner, parser: DeclarationParser) -> None:
    declaration = parser.parse(
        "resources:\n  segment:\n    seg:\n      subnet: 10.0.0.0/24\n"
    )
    records = {
        "tier1_gateway.gw": _record("tier1_gateway.gw", {}),
        "segment.seg": _record(
            "segment.seg",
            {"subnet": "10.0.0.0/24", "connectivity_path": "${tier1_gateway.gw.path}"},
            ["tier1_gateway.gw"],
        ),
    }

    plan = planner.create_plan("run-1", DependencyGraph.build(declaration), records)

    assert _ops(plan) == [
        (OperationType.UPDATE, "segment.seg"),
        (OperationType.DELETE, "tier1_gateway.gw"),
    ]
    update, delete = plan.operations
    assert delete.dependencies == [update.id]


def test_destroy_deletes_everything(planner, chain_declaration) -> None:
    records = _records_for(chain_declaration)

    plan = planner.create_plan("run-1", None, records, destroy=True)

    assert plan.destroy
    assert _ops(plan) == [
        (OperationType.DELETE, "virtual_machine.vm"),
        (OperationType.DELETE, "segment.seg"),
        (OperationType.DELETE, "tier1_gateway.gw"),
    ]
    assert all(op.reason == "destroy requested" for op in plan.operations)


def test_cycle_in_remembered_dependencies(planner) -> None:
    records = {
        "segment.a": _record("segment.a", {}, ["segment.b"]),
        "segment.b": _record("segment.b", {}, ["segment.a"]),
    }
    with pytest.raises(CycleError):
        planner.create_plan("run-1", None, records, destroy=True)


def test_plan_lookup_helpers(planner, chain_declaration) -> None:
    plan = planner.create_plan("run-1", DependencyGraph.build(chain_declaration), {})
    seg = plan.for_resource("segment.seg")
    assert seg is not None
    assert plan.operation(seg.id) is seg
    assert plan.for_resource("segment.nope") is None
