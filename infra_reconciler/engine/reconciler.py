"""
Infra Reconciler - Reconciler

Ties parser output, graph builder, planner and executor together:
refresh -> plan -> apply.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging
import time
import uuid

from infra_reconciler.adapters.base import (
    AdapterRegistry,
    ResourceNotFoundError,
    call_with_retry,
)
from infra_reconciler.config import RetryPolicy
from infra_reconciler.engine.executor import PlanExecutor
from infra_reconciler.engine.graph import DependencyGraph
from infra_reconciler.engine.planner import ReconciliationPlanner
from infra_reconciler.models import Declaration, Plan, RunSummary
from infra_reconciler.state import StateStore
from infra_reconciler.storage import StorageManager

logger = logging.getLogger(__name__)


def generate_run_id() -> str:
    """Generate unique run ID."""
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    return f"run_{timestamp}_{uuid.uuid4().hex[:6]}"


class Reconciler:
    """
    High-level engine: Plan -> Apply.

    Graph errors (cycles, unresolved references) surface from plan()
    before any operation is applied.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        state_store: StateStore,
        storage: Optional[StorageManager] = None,
        max_workers: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        planner: Optional[ReconciliationPlanner] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.state_store = state_store
        self.storage = storage
        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.planner = planner or ReconciliationPlanner()
        self._sleep = sleep
        self._executor: Optional[PlanExecutor] = None

    def build_graph(self, declaration: Declaration) -> DependencyGraph:
        return DependencyGraph.build(declaration)

    def refresh(self) -> Dict[str, Optional[Dict[str, Any]]]:
        """
        Read every remembered resource from its adapter.

        Transient read errors are retried with the reconciler's retry policy.

        Returns:
            Drift map: identity key -> current outputs, or None when the
            remote object is gone. Only entries that differ are included.

        Raises:
            AdapterError: a read failed permanently or ran out of attempts
        """
        drift: Dict[str, Optional[Dict[str, Any]]] = {}
        self.registry.connect_all()
        try:
            for record in self.state_store.list_records():
                adapter = self.registry.get(record.identity.type)
                try:
                    current = call_with_retry(
                        lambda: adapter.read(record.identity, record.outputs),
                        self.retry_policy,
                        record.key,
                        sleep=self._sleep,
                    )
                except ResourceNotFoundError:
                    logger.warning(f"Remembered resource missing remotely: {record.key}")
                    drift[record.key] = None
                    continue
                if current != record.outputs:
                    logger.info(f"Drift detected: {record.key}")
                    drift[record.key] = current
        finally:
            self.registry.disconnect_all()
        return drift

    def plan(
        self,
        declaration: Optional[Declaration],
        run_id: Optional[str] = None,
        refresh: bool = False,
        destroy: bool = False,
    ) -> Plan:
        """
        Build a plan for a declaration.

        Args:
            declaration: Desired state (ignored when destroying)
            run_id: Run identifier (generated when omitted)
            refresh: Detect drift through adapter reads first
            destroy: Delete every remembered resource

        Raises:
            CycleError, UnresolvedReferenceError: declaration graph is invalid
        """
        run_id = run_id or generate_run_id()
        graph = None
        if not destroy:
            graph = self.build_graph(declaration or Declaration())
        records = self.state_store.all()
        drift = self.refresh() if refresh and not destroy else None
        return self.planner.create_plan(run_id, graph, records, drift=drift, destroy=destroy)

    def create_executor(self) -> PlanExecutor:
        return PlanExecutor(
            registry=self.registry,
            state_store=self.state_store,
            storage=self.storage,
            max_workers=self.max_workers,
            retry_policy=self.retry_policy,
            sleep=self._sleep,
        )

    def apply(self, plan: Plan, executor: Optional[PlanExecutor] = None) -> RunSummary:
        """Apply a plan and return the run summary."""
        self._executor = executor or self.create_executor()
        if self.storage:
            if not self.storage.run_exists(plan.run_id):
                self.storage.create_run(plan.run_id, destroy=plan.destroy)
            self.storage.save_plan(plan.run_id, plan)
        try:
            return self._executor.execute(plan)
        finally:
            self._executor = None

    def reconcile(
        self,
        declaration: Optional[Declaration],
        run_id: Optional[str] = None,
        refresh: bool = False,
        destroy: bool = False,
    ) -> RunSummary:
        """Plan and apply in one step."""
        plan = self.plan(declaration, run_id=run_id, refresh=refresh, destroy=destroy)
        return self.apply(plan)

    def cancel(self) -> bool:
        """Cancel the running apply, if any."""
        if self._executor is None:
            return False
        self._executor.cancel()
        return True
