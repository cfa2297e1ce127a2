from __future__ import annotations

import threading
import time
from typing import Any, Dict, List

import pytest

from infra_reconciler.adapters import (
    AdapterError,
    AdapterRegistry,
    FakeControllerAdapter,
    ResourceAdapter,
)
from infra_reconciler.config import RetryPolicy
from infra_reconciler.engine.executor import (
    ExecutionError,
    PlanExecutor,
    resolve_references,
)
from infra_reconciler.engine.graph import DependencyGraph
from infra_reconciler.engine.planner import ReconciliationPlanner
from infra_reconciler.models import (
    Operation,
    OperationType,
    Plan,
    ResourceIdentity,
    ResourceStatus,
    RunStatus,
)
from infra_reconciler.state import InMemoryStateStore, StateStoreError


def _plan(declaration, state_store, destroy: bool = False) -> Plan:
    graph = None if destroy else DependencyGraph.build(declaration)
    return ReconciliationPlanner().create_plan(
        "run-test", graph, state_store.all(), destroy=destroy
    )


def _statuses(summary) -> Dict[str, ResourceStatus]:
    return {r.resource: r.status for r in summary.results}


FAN_OUT_YAML = """
resources:
  tier1_gateway:
    gw: {}
  segment:
    web:
      gw: ${tier1_gateway.gw.path}
    db: {}
  virtual_machine:
    web-01:
      network: ${segment.web.path}
    db-01:
      network: ${segment.db.path}
"""


# =============================================================================
# REFERENCE RESOLUTION
# =============================================================================

def test_resolve_references() -> None:
    outputs = {"segment.web": {"id": "seg-1", "path": "/infra/segments/web", "meta": {"vlan": 10}}}
    value = {
        "network": "${segment.web.path}",
        "vlan": "${segment.web.meta.vlan}",
        "label": "on ${segment.web.id}",
        "list": ["${segment.web.id}", 5],
    }
    assert resolve_references(value, outputs) == {
        "network": "/infra/segments/web",
        "vlan": 10,
        "label": "on seg-1",
        "list": ["seg-1", 5],
    }


def test_embedded_structured_outputs_render_as_json() -> None:
    outputs = {"segment.web": {"meta": {"vlan": 10, "tags": ["a", "b"]}, "ports": [80, 443]}}

    assert resolve_references("meta=${segment.web.meta}", outputs) == (
        'meta={"tags": ["a", "b"], "vlan": 10}'
    )
    assert resolve_references("ports ${segment.web.ports}", outputs) == "ports [80, 443]"
    assert resolve_references("${segment.web.ports}", outputs) == [80, 443]


def test_resolve_missing_output() -> None:
    with pytest.raises(AdapterError, match="has no output 'nope'"):
        resolve_references("${segment.web.nope}", {"segment.web": {"id": "x"}}, "vm.a")
    with pytest.raises(AdapterError, match="not available"):
        resolve_references("${segment.web.id}", {}, "vm.a")


# =============================================================================
# APPLY
# =============================================================================

def test_apply_creates_and_resolves(executor, adapter, state_store, storage, chain_declaration) -> None:
    summary = executor.execute(_plan(chain_declaration, state_store))

    assert summary.status == RunStatus.COMPLETED
    assert summary.applied == 3
    assert summary.failed == summary.blocked == 0

    segment = adapter.get_object("segment.seg")
    gateway = adapter.get_object("tier1_gateway.gw")
    assert segment["connectivity_path"] == gateway["path"]

    record = state_store.get(ResourceIdentity.parse("segment.seg"))
    assert record.declared == {
        "connectivity_path": "${tier1_gateway.gw.path}",
        "subnet": "10.0.1.0/24",
    }
    assert record.outputs["id"] == segment["id"]
    assert record.dependencies == ["tier1_gateway.gw"]

    artifact_names = {a.name for a in storage.list_artifacts("run-test")}
    assert "summary.json" in artifact_names
    assert "segment.seg.json" in artifact_names


def test_second_run_has_nothing_to_do(executor, state_store, chain_declaration) -> None:
    executor.execute(_plan(chain_declaration, state_store))
    assert _plan(chain_declaration, state_store).is_empty


def test_failure_blocks_dependents_only(executor, adapter, state_store, parser) -> None:
    declaration = parser.parse(FAN_OUT_YAML)
    adapter.fail_permanently("segment.web")

    summary = executor.execute(_plan(declaration, state_store))

    statuses = _statuses(summary)
    assert statuses["tier1_gateway.gw"] == ResourceStatus.APPLIED
    assert statuses["segment.web"] == ResourceStatus.FAILED
    assert statuses["virtual_machine.web-01"] == ResourceStatus.BLOCKED
    assert statuses["segment.db"] == ResourceStatus.APPLIED
    assert statuses["virtual_machine.db-01"] == ResourceStatus.APPLIED
    assert summary.status == RunStatus.FAILED

    blocked = summary.result_for("virtual_machine.web-01")
    assert blocked.blocked_by == "segment.web"
    failed = summary.result_for("segment.web")
    assert failed.error_type == "AdapterError"

    assert not adapter.exists("virtual_machine.web-01")
    assert state_store.get(ResourceIdentity.parse("segment.web")) is None
    assert state_store.get(ResourceIdentity.parse("segment.db")) is not None


def test_transitive_dependents_blocked(executor, adapter, state_store, chain_declaration) -> None:
    adapter.fail_permanently("tier1_gateway.gw")

    summary = executor.execute(_plan(chain_declaration, state_store))

    assert summary.failed == 1
    assert summary.blocked == 2
    assert summary.result_for("virtual_machine.vm").blocked_by == "tier1_gateway.gw"
    assert [c["resource"] for c in adapter.calls()] == ["tier1_gateway.gw"]


def test_transient_errors_are_retried(executor, adapter, state_store, chain_declaration) -> None:
    adapter.fail_transiently("segment.seg", times=2)

    summary = executor.execute(_plan(chain_declaration, state_store))

    assert summary.status == RunStatus.COMPLETED
    assert summary.result_for("segment.seg").attempts == 3


def test_retries_are_bounded(registry, state_store, adapter, chain_declaration) -> None:
    delays: List[float] = []
    executor = PlanExecutor(
        registry=registry,
        state_store=state_store,
        retry_policy=RetryPolicy(max_attempts=3, delay_seconds=0.5, backoff_factor=2.0),
        sleep=delays.append,
    )
    adapter.fail_transiently("tier1_gateway.gw", times=5)

    summary = executor.execute(_plan(chain_declaration, state_store))

    result = summary.result_for("tier1_gateway.gw")
    assert result.status == ResourceStatus.FAILED
    assert result.attempts == 3
    assert result.error_type == "TransientAdapterError"
    assert delays == [0.5, 1.0]


def test_unexpected_adapter_exception_is_wrapped(state_store, chain_declaration) -> None:
    class BrokenAdapter(FakeControllerAdapter):
        def create(self, identity, attributes):
            if identity.type == "segment":
                raise RuntimeError("socket closed")
            return super().create(identity, attributes)

    executor = PlanExecutor(AdapterRegistry(default=BrokenAdapter()), state_store)
    summary = executor.execute(_plan(chain_declaration, state_store))

    result = summary.result_for("segment.seg")
    assert result.status == ResourceStatus.FAILED
    assert result.error_type == "AdapterError"
    assert "socket closed" in result.error_message
    assert summary.result_for("virtual_machine.vm").status == ResourceStatus.BLOCKED


def test_missing_adapter_fails_resource(state_store, chain_declaration) -> None:
    registry = AdapterRegistry()
    registry.register("tier1_gateway", FakeControllerAdapter())
    executor = PlanExecutor(registry, state_store)

    summary = executor.execute(_plan(chain_declaration, state_store))

    assert summary.result_for("tier1_gateway.gw").status == ResourceStatus.APPLIED
    assert summary.result_for("segment.seg").status == ResourceStatus.FAILED
    assert summary.result_for("virtual_machine.vm").status == ResourceStatus.BLOCKED


# =============================================================================
# UPDATES AND DELETES
# =============================================================================

def test_update_uses_remembered_outputs(executor, adapter, state_store, parser, chain_declaration) -> None:
    executor.execute(_plan(chain_declaration, state_store))
    before = adapter.get_object("segment.seg")

    changed = parser.parse(
        """
resources:
  tier1_gateway:
    gw:
      edge_cluster: edge-01
  segment:
    seg:
      connectivity_path: ${tier1_gateway.gw.path}
      subnet: 10.0.2.0/24
  virtual_machine:
    vm:
      network: ${segment.seg.path}
      cpu: 2
"""
    )
    plan = _plan(changed, state_store)
    assert [(op.type, op.key) for op in plan.operations] == [
        (OperationType.UPDATE, "segment.seg"),
    ]
    summary = PlanExecutor(executor.registry, state_store).execute(plan)

    after = adapter.get_object("segment.seg")
    assert summary.status == RunStatus.COMPLETED
    assert after["subnet"] == "10.0.2.0/24"
    assert after["id"] == before["id"]
    assert after["revision"] == before["revision"] + 1


def test_destroy_deletes_dependents_first(registry, adapter, state_store, chain_declaration) -> None:
    PlanExecutor(registry, state_store).execute(_plan(chain_declaration, state_store))

    plan = _plan(None, state_store, destroy=True)
    summary = PlanExecutor(registry, state_store, max_workers=1).execute(plan)

    assert summary.status == RunStatus.COMPLETED
    assert len(state_store) == 0
    deleted = [c["resource"] for c in adapter.calls("delete")]
    assert deleted == ["virtual_machine.vm", "segment.seg", "tier1_gateway.gw"]


def test_delete_of_missing_remote_object_succeeds(registry, adapter, state_store, chain_declaration) -> None:
    PlanExecutor(registry, state_store).execute(_plan(chain_declaration, state_store))
    adapter.remove_out_of_band("virtual_machine.vm")

    summary = PlanExecutor(registry, state_store).execute(_plan(None, state_store, destroy=True))

    assert summary.result_for("virtual_machine.vm").status == ResourceStatus.APPLIED
    assert len(state_store) == 0


# =============================================================================
# CONCURRENCY AND CANCELLATION
# =============================================================================

class _GateAdapter(FakeControllerAdapter):
    """Blocks creates until the test releases them, tracking concurrency."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()
        self.started = threading.Event()
        self.active = 0
        self.peak = 0
        self._count_lock = threading.Lock()

    def create(self, identity, attributes):
        with self._count_lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started.set()
        self.release.wait(timeout=5)
        try:
            return super().create(identity, attributes)
        finally:
            with self._count_lock:
                self.active -= 1


def test_independent_operations_run_concurrently(state_store, parser) -> None:
    declaration = parser.parse(
        "resources:\n  segment:\n" + "".join(f"    s{i}: {{}}\n" for i in range(4))
    )
    adapter = _GateAdapter()
    executor = PlanExecutor(AdapterRegistry(default=adapter), state_store, max_workers=2)

    def release_when_busy() -> None:
        deadline = time.monotonic() + 5
        while adapter.active < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        adapter.release.set()

    thread = threading.Thread(target=release_when_busy)
    thread.start()
    summary = executor.execute(_plan(declaration, state_store))
    thread.join()

    assert summary.applied == 4
    assert adapter.peak == 2


def test_cancel_before_execute(executor, adapter, state_store, chain_declaration) -> None:
    executor.cancel()

    summary = executor.execute(_plan(chain_declaration, state_store))

    assert summary.status == RunStatus.CANCELLED
    assert summary.cancelled == 3
    assert adapter.calls() == []
    assert len(state_store) == 0


def test_cancel_lets_in_flight_operation_finish(state_store, chain_declaration) -> None:
    adapter = _GateAdapter()
    executor = PlanExecutor(AdapterRegistry(default=adapter), state_store)

    def cancel_then_release() -> None:
        adapter.started.wait(timeout=5)
        executor.cancel()
        adapter.release.set()

    thread = threading.Thread(target=cancel_then_release)
    thread.start()
    summary = executor.execute(_plan(chain_declaration, state_store))
    thread.join()

    statuses = _statuses(summary)
    assert statuses["tier1_gateway.gw"] == ResourceStatus.APPLIED
    assert statuses["segment.seg"] == ResourceStatus.CANCELLED
    assert statuses["virtual_machine.vm"] == ResourceStatus.CANCELLED
    assert summary.status == RunStatus.CANCELLED
    assert state_store.get(ResourceIdentity.parse("tier1_gateway.gw")) is not None


# =============================================================================
# STATE STORE FAILURES
# =============================================================================

class _FailingStateStore(InMemoryStateStore):
    def __init__(self, fail_on: str) -> None:
        super().__init__()
        self.fail_on = fail_on

    def put(self, record) -> None:
        if record.key == self.fail_on:
            raise StateStoreError("disk full", identity=record.key)
        super().put(record)


def test_state_store_failure_is_fatal(registry, storage, chain_declaration) -> None:
    state_store = _FailingStateStore("segment.seg")
    executor = PlanExecutor(registry, state_store, storage=storage)
    plan = _plan(chain_declaration, state_store)

    with pytest.raises(StateStoreError, match="disk full"):
        executor.execute(plan)

    summary = executor.last_summary
    assert summary.status == RunStatus.FAILED
    assert "disk full" in summary.error_message
    assert summary.applied == 1
    statuses = _statuses(summary)
    assert statuses["tier1_gateway.gw"] == ResourceStatus.APPLIED
    assert statuses["segment.seg"] == ResourceStatus.FAILED
    assert statuses["virtual_machine.vm"] == ResourceStatus.BLOCKED
    assert summary.result_for("segment.seg").error_type == "StateStoreError"
    assert storage.load_summary("run-test").status == RunStatus.FAILED


# =============================================================================
# PROGRESS AND VALIDATION
# =============================================================================

def test_progress_callback(executor, state_store, chain_declaration) -> None:
    updates: List[Any] = []
    executor.set_progress_callback(lambda run_id, percent, current: updates.append((percent, current)))

    executor.execute(_plan(chain_declaration, state_store))

    assert updates[0] == (33, "tier1_gateway.gw")
    assert updates[-1] == (100, "Complete")


def test_plan_with_unknown_dependency_rejected(executor) -> None:
    op = Operation(
        type=OperationType.CREATE,
        identity=ResourceIdentity(type="segment", name="a"),
        dependencies=["missing"],
    )
    with pytest.raises(ExecutionError, match="unknown operation"):
        executor.execute(Plan(run_id="run-bad", operations=[op]))


def test_max_workers_must_be_positive(registry, state_store) -> None:
    with pytest.raises(ValueError):
        PlanExecutor(registry, state_store, max_workers=0)


def test_registry_without_adapter() -> None:
    class Dummy(ResourceAdapter):
        def create(self, identity, attributes):
            return {}

        def read(self, identity, outputs):
            return outputs

        def update(self, identity, attributes, outputs):
            return outputs

        def delete(self, identity, outputs):
            return None

    registry = AdapterRegistry()
    registry.register("segment", Dummy())
    assert isinstance(registry.get("segment"), Dummy)
    with pytest.raises(AdapterError, match="nat_rule"):
        registry.get("nat_rule")
