"""
Infra Reconciler - Plan Executor

Applies plan operations through remote adapters.
Handles parallel scheduling, retries, failure isolation, cancellation
and durable state updates.
"""

from __future__ import annotations
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import threading
import time

from infra_reconciler.adapters.base import (
    AdapterError,
    AdapterRegistry,
    ResourceAdapter,
    ResourceNotFoundError,
    call_with_retry,
)
from infra_reconciler.config import RetryPolicy
from infra_reconciler.models import (
    REFERENCE_PATTERN,
    Operation,
    OperationType,
    Plan,
    ResourceResult,
    ResourceStatus,
    RunStatus,
    RunSummary,
    StateRecord,
)
from infra_reconciler.state import StateStore, StateStoreError
from infra_reconciler.storage import StorageManager

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Exception raised when a plan cannot be executed as given."""

    def __init__(self, message: str, operation_id: Optional[str] = None):
        self.message = message
        self.operation_id = operation_id
        super().__init__(self.message)


def resolve_references(
    value: Any,
    outputs: Dict[str, Dict[str, Any]],
    identity: Optional[str] = None,
) -> Any:
    """
    Replace ${type.name.attribute} markers with applied output values.

    A string that is exactly one marker takes the raw output value;
    markers embedded in longer strings are interpolated as text, with
    dict and list outputs rendered as JSON.

    Raises:
        AdapterError: if the referenced output is not available
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return _lookup_output(whole, outputs, identity)
        return REFERENCE_PATTERN.sub(
            lambda m: _as_text(_lookup_output(m, outputs, identity)), value
        )
    if isinstance(value, dict):
        return {k: resolve_references(v, outputs, identity) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, outputs, identity) for v in value]
    return value


def _lookup_output(match, outputs: Dict[str, Dict[str, Any]], identity: Optional[str]) -> Any:
    target = f"{match['type']}.{match['name']}"
    if target not in outputs:
        raise AdapterError(f"Outputs of '{target}' are not available", identity=identity)
    current: Any = outputs[target]
    for part in match["attribute"].split("."):
        if not isinstance(current, dict) or part not in current:
            raise AdapterError(
                f"Resource '{target}' has no output '{match['attribute']}'",
                identity=identity,
            )
        current = current[part]
    return current


def _as_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


class PlanExecutor:
    """
    Executes plans against remote adapters.

    Responsibilities:
    - Apply operations respecting the plan's partial order
    - Run independent operations concurrently (bounded worker pool)
    - Retry transient adapter errors with bounded backoff
    - Persist state immediately after each successful operation
    - Block dependents of failed operations, keep independent branches
    - Stop scheduling on cancellation or state store failure

    Error Handling:
    - AdapterError is isolated to the resource and its dependents
    - StateStoreError is fatal: the summary is saved and the error re-raised
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        state_store: StateStore,
        storage: Optional[StorageManager] = None,
        max_workers: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize executor.

        Args:
            registry: Adapters per resource type
            state_store: Store updated after every successful operation
            storage: Optional run storage for per-resource artifacts
            max_workers: Concurrency limit
            retry_policy: Backoff policy for transient adapter errors
            sleep: Sleep function used between retries
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.registry = registry
        self.state_store = state_store
        self.storage = storage
        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logging.getLogger(__name__)

        self._sleep = sleep
        self._cancel_event = threading.Event()
        self._progress_callback: Optional[Callable[[str, int, str], None]] = None
        self.last_summary: Optional[RunSummary] = None

    def set_progress_callback(self, callback: Callable[[str, int, str], None]) -> None:
        """
        Set callback for progress updates.

        Args:
            callback: Function(run_id, percent, current_resource)
        """
        self._progress_callback = callback

    def _report_progress(self, run_id: str, percent: int, current: str) -> None:
        if self._progress_callback:
            self._progress_callback(run_id, percent, current)

    def cancel(self) -> None:
        """Stop starting new operations; in-flight ones finish."""
        self._cancel_event.set()
        self.logger.info("Cancellation requested")

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def execute(self, plan: Plan) -> RunSummary:
        """
        Execute a plan.

        Args:
            plan: Plan with ordered operations

        Returns:
            RunSummary with per-resource results

        Raises:
            ExecutionError: plan is malformed
            StateStoreError: state could not be read or persisted
        """
        run_id = plan.run_id
        started_at = datetime.utcnow()
        ops_by_id = _index_operations(plan.operations)
        order = {op.id: i for i, op in enumerate(plan.operations)}

        self.logger.info(f"Starting execution: {run_id} with {plan.total_operations} operations")

        outputs: Dict[str, Dict[str, Any]] = {
            record.key: record.outputs for record in self.state_store.list_records()
        }
        results: Dict[str, ResourceResult] = {}
        remaining = {op.id: set(op.dependencies) for op in plan.operations}
        dependents: Dict[str, List[str]] = {op.id: [] for op in plan.operations}
        for op in plan.operations:
            for dep in op.dependencies:
                dependents[dep].append(op.id)

        ready = [op.id for op in plan.operations if not remaining[op.id]]
        fatal: Optional[StateStoreError] = None

        self.registry.connect_all()
        try:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="reconcile"
            ) as pool:
                futures: Dict[Future, Operation] = {}
                while True:
                    while ready and fatal is None and not self.cancelled:
                        op = ops_by_id[ready.pop(0)]
                        self.logger.info(f"Applying {op.type.value}: {op.key}")
                        futures[pool.submit(self._apply_operation, op, dict(outputs))] = op

                    if not futures:
                        break

                    done, _ = wait(futures, return_when=FIRST_COMPLETED)
                    for future in sorted(done, key=lambda f: order[futures[f].id]):
                        op = futures.pop(future)
                        try:
                            result = future.result()
                        except StateStoreError as e:
                            self.logger.error(f"State store failure on {op.key}: {e.message}")
                            fatal = e
                            result = self._failed_result(op, e, attempts=1)
                        results[op.id] = result

                        if result.status == ResourceStatus.APPLIED:
                            if op.type == OperationType.DELETE:
                                outputs.pop(op.key, None)
                            else:
                                outputs[op.key] = result.outputs
                            for dependent_id in dependents[op.id]:
                                remaining[dependent_id].discard(op.id)
                                if not remaining[dependent_id] and dependent_id not in results:
                                    ready.append(dependent_id)
                            ready.sort(key=order.__getitem__)
                        else:
                            self._block_dependents(op, dependents, ops_by_id, results)

                        self._store_result(run_id, result)
                        percent = int(len(results) / max(plan.total_operations, 1) * 100)
                        self._report_progress(run_id, percent, op.key)
        finally:
            self.registry.disconnect_all()

        reason = "Aborted after state store failure" if fatal else "Run cancelled"
        for op in plan.operations:
            if op.id not in results:
                results[op.id] = ResourceResult(
                    resource=op.key,
                    operation=op.type,
                    operation_id=op.id,
                    status=ResourceStatus.CANCELLED,
                    error_message=reason,
                )
                self._store_result(run_id, results[op.id])

        summary = self._summarize(plan, results, started_at, fatal)
        self.last_summary = summary
        if self.storage:
            summary.artifacts.append(self.storage.save_summary(run_id, summary))

        self._report_progress(run_id, 100, "Complete")
        self.logger.info(
            f"Execution finished: {run_id} - {summary.status.value}, "
            f"{summary.applied} applied, {summary.failed} failed, "
            f"{summary.blocked} blocked, {summary.cancelled} cancelled"
        )

        if fatal is not None:
            raise fatal
        return summary

    # =========================================================================
    # SINGLE OPERATION
    # =========================================================================

    def _apply_operation(self, op: Operation, outputs: Dict[str, Dict[str, Any]]) -> ResourceResult:
        """
        Apply one operation in a worker thread.

        Returns a FAILED result for adapter errors; raises StateStoreError.
        """
        result = ResourceResult(
            resource=op.key,
            operation=op.type,
            operation_id=op.id,
            status=ResourceStatus.PENDING,
            started_at=datetime.utcnow(),
        )

        try:
            adapter = self.registry.get(op.identity.type)
            attributes: Dict[str, Any] = {}
            if op.type != OperationType.DELETE:
                attributes = resolve_references(op.attributes, outputs, op.key)
            remote = self._call_with_retry(op, adapter, attributes, result)
        except AdapterError as e:
            if e.identity is None:
                e.identity = op.key
            self.logger.error(f"{op.type.value} failed: {op.key} - {e.message}")
            return self._failed_result(op, e, result.attempts, result.started_at)

        if op.type == OperationType.DELETE:
            self.state_store.delete(op.identity)
        else:
            self.state_store.put(
                StateRecord(
                    identity=op.identity,
                    declared=op.attributes,
                    outputs=remote,
                    dependencies=op.resource_dependencies,
                )
            )

        result.status = ResourceStatus.APPLIED
        result.outputs = remote
        result.completed_at = datetime.utcnow()
        result.duration_seconds = (result.completed_at - result.started_at).total_seconds()
        self.logger.info(f"{op.type.value} applied: {op.key}")
        return result

    def _call_with_retry(
        self,
        op: Operation,
        adapter: ResourceAdapter,
        attributes: Dict[str, Any],
        result: ResourceResult,
    ) -> Dict[str, Any]:
        def record_attempt(attempt: int) -> None:
            result.attempts = attempt

        return call_with_retry(
            lambda: self._invoke(op, adapter, attributes),
            self.retry_policy,
            op.key,
            sleep=self._sleep,
            on_attempt=record_attempt,
        )

    def _invoke(
        self,
        op: Operation,
        adapter: ResourceAdapter,
        attributes: Dict[str, Any],
    ) -> Dict[str, Any]:
        prior_outputs = op.prior.outputs if op.prior else {}
        try:
            if op.type == OperationType.CREATE:
                return adapter.create(op.identity, attributes)
            if op.type == OperationType.UPDATE:
                return adapter.update(op.identity, attributes, prior_outputs)
            try:
                adapter.delete(op.identity, prior_outputs)
            except ResourceNotFoundError:
                self.logger.info(f"Already deleted remotely: {op.key}")
            return {}
        except AdapterError:
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected adapter error: {op.key}")
            raise AdapterError(
                f"Unexpected adapter error: {e}", identity=op.key, original_error=e
            ) from e

    # =========================================================================
    # RESULTS
    # =========================================================================

    def _failed_result(
        self,
        op: Operation,
        error: Exception,
        attempts: int,
        started_at: Optional[datetime] = None,
    ) -> ResourceResult:
        completed_at = datetime.utcnow()
        started_at = started_at or completed_at
        return ResourceResult(
            resource=op.key,
            operation=op.type,
            operation_id=op.id,
            status=ResourceStatus.FAILED,
            attempts=attempts,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
            error_type=error.__class__.__name__,
            error_message=getattr(error, "message", str(error)),
        )

    def _block_dependents(
        self,
        failed: Operation,
        dependents: Dict[str, List[str]],
        ops_by_id: Dict[str, Operation],
        results: Dict[str, ResourceResult],
    ) -> None:
        """Mark every transitive dependent of a failed operation as blocked."""
        stack = list(dependents[failed.id])
        while stack:
            op_id = stack.pop()
            if op_id in results:
                continue
            op = ops_by_id[op_id]
            results[op_id] = ResourceResult(
                resource=op.key,
                operation=op.type,
                operation_id=op.id,
                status=ResourceStatus.BLOCKED,
                blocked_by=failed.key,
                error_message=f"Blocked by failed dependency: {failed.key}",
            )
            self.logger.warning(f"Blocked: {op.key} (depends on failed {failed.key})")
            stack.extend(dependents[op_id])

    def _store_result(self, run_id: str, result: ResourceResult) -> None:
        if self.storage:
            self.storage.save_resource_result(run_id, result)

    def _summarize(
        self,
        plan: Plan,
        results: Dict[str, ResourceResult],
        started_at: datetime,
        fatal: Optional[StateStoreError],
    ) -> RunSummary:
        ordered = [results[op.id] for op in plan.operations]
        ordered.extend(
            ResourceResult(resource=key, status=ResourceStatus.UNCHANGED)
            for key in plan.unchanged
        )

        def count(status: ResourceStatus) -> int:
            return sum(1 for r in ordered if r.status == status)

        completed_at = datetime.utcnow()
        summary = RunSummary(
            run_id=plan.run_id,
            status=RunStatus.COMPLETED,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
            destroy=plan.destroy,
            total_operations=plan.total_operations,
            applied=count(ResourceStatus.APPLIED),
            failed=count(ResourceStatus.FAILED),
            blocked=count(ResourceStatus.BLOCKED),
            unchanged=count(ResourceStatus.UNCHANGED),
            cancelled=count(ResourceStatus.CANCELLED),
            results=ordered,
        )

        if fatal is not None:
            summary.status = RunStatus.FAILED
            summary.error_message = f"State store failure: {fatal.message}"
        elif self.cancelled and summary.cancelled:
            summary.status = RunStatus.CANCELLED
        elif summary.failed or summary.blocked or summary.cancelled:
            summary.status = RunStatus.FAILED
        return summary


def _index_operations(operations: List[Operation]) -> Dict[str, Operation]:
    ops_by_id: Dict[str, Operation] = {}
    for op in operations:
        if op.id in ops_by_id:
            raise ExecutionError(f"Duplicate operation id in plan: {op.id}", operation_id=op.id)
        ops_by_id[op.id] = op
    for op in operations:
        for dep in op.dependencies:
            if dep not in ops_by_id:
                raise ExecutionError(
                    f"Operation {op.id} depends on unknown operation: {dep}",
                    operation_id=op.id,
                )
    return ops_by_id


# Factory function
def create_executor(
    registry: AdapterRegistry,
    state_store: StateStore,
    storage: Optional[StorageManager] = None,
    max_workers: int = 4,
    retry_policy: Optional[RetryPolicy] = None,
) -> PlanExecutor:
    """Create a plan executor instance."""
    return PlanExecutor(
        registry=registry,
        state_store=state_store,
        storage=storage,
        max_workers=max_workers,
        retry_policy=retry_policy,
    )
