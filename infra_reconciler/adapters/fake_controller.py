"""
Infra Reconciler - Fake Controller Adapter

Simulates a networking/virtualization controller for prototyping and testing.
Stores objects in-memory, optionally persisted to a JSON file between runs.
"""

from __future__ import annotations
import json
import random
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
import logging

from infra_reconciler.adapters.base import (
    AdapterError,
    AdapterFactory,
    ResourceAdapter,
    ResourceNotFoundError,
    TransientAdapterError,
)
from infra_reconciler.models import ResourceIdentity

logger = logging.getLogger(__name__)


class FakeControllerAdapter(ResourceAdapter):
    """
    Fake controller adapter for simulation and prototyping.

    Features:
    - In-memory object storage keyed by resource identity
    - Generated outputs: id, path, revision, timestamps
    - Simulated latency and random transient failures
    - Scripted failures per identity (permanent or N transient)
    - Out-of-band drift injection for refresh testing
    - Optional JSON persistence (state_path) and state export

    The adapter is schema-agnostic: any resource type is accepted and its
    attributes are echoed back in the outputs.
    """

    ADAPTER_NAME = "fake"

    def __init__(
        self,
        simulate_latency: bool = False,
        failure_rate: float = 0.0,
        state_path: Optional[str] = None,
    ):
        """
        Initialize fake controller.

        Args:
            simulate_latency: Add realistic delays
            failure_rate: Probability of simulated transient failures (0.0 - 1.0)
            state_path: Optional JSON file the objects are loaded from at
                startup and saved to after every change

        Raises:
            AdapterError: if an existing state file cannot be read
        """
        self.simulate_latency = simulate_latency
        self.failure_rate = failure_rate
        self.state_path = Path(state_path) if state_path else None

        self._lock = threading.Lock()
        self._objects: Dict[str, Dict[str, Any]] = {}
        self._calls: List[Dict[str, Any]] = []
        self._permanent_failures: Set[str] = set()
        self._transient_failures: Dict[str, int] = {}
        self._connected = False

        if self.state_path and self.state_path.exists():
            self._load_state(self.state_path)

        logger.info(
            f"FakeControllerAdapter initialized: latency={simulate_latency}, "
            f"failure_rate={failure_rate}, objects={len(self._objects)}"
        )

    # =========================================================================
    # SIMULATION HELPERS
    # =========================================================================

    def _simulate_latency(self, base_ms: int = 50, variance_ms: int = 30) -> None:
        if self.simulate_latency:
            delay = (base_ms + random.randint(-variance_ms, variance_ms)) / 1000
            time.sleep(max(0.01, delay))

    def _check_failures(self, operation: str, key: str) -> None:
        with self._lock:
            self._calls.append({
                "operation": operation,
                "resource": key,
                "timestamp": datetime.utcnow().isoformat(),
            })
            if key in self._permanent_failures:
                raise AdapterError(f"Simulated {operation} failure for {key}", identity=key)
            remaining = self._transient_failures.get(key, 0)
            if remaining > 0:
                self._transient_failures[key] = remaining - 1
                raise TransientAdapterError(
                    f"Simulated transient {operation} failure for {key}", identity=key
                )
        if random.random() < self.failure_rate:
            raise TransientAdapterError(f"Simulated random {operation} failure for {key}", identity=key)

    def fail_permanently(self, key: str) -> None:
        """Make every call for the resource fail with AdapterError."""
        with self._lock:
            self._permanent_failures.add(key)

    def fail_transiently(self, key: str, times: int) -> None:
        """Make the next *times* calls for the resource raise TransientAdapterError."""
        with self._lock:
            self._transient_failures[key] = times

    def clear_failures(self) -> None:
        with self._lock:
            self._permanent_failures.clear()
            self._transient_failures.clear()

    def inject_drift(self, key: str, **changes: Any) -> None:
        """Change a remote object out-of-band, as an operator would."""
        with self._lock:
            if key not in self._objects:
                raise KeyError(key)
            self._objects[key].update(changes)
            self._objects[key]["revision"] += 1
            self._persist()

    def remove_out_of_band(self, key: str) -> None:
        """Delete a remote object behind the engine's back."""
        with self._lock:
            self._objects.pop(key, None)
            self._persist()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _load_state(self, path: Path) -> None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise AdapterError(
                f"Cannot load fake controller state from {path}: {e}", original_error=e
            )
        self._objects = dict(data.get("objects", {}))
        logger.info(f"Loaded {len(self._objects)} objects from {path}")

    def _write_state(self, path: Path) -> None:
        # Caller holds the lock
        path.parent.mkdir(parents=True, exist_ok=True)
        state = {
            "metadata": {
                "exported_at": datetime.utcnow().isoformat(),
                "call_count": len(self._calls),
            },
            "objects": self._objects,
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, default=str)

    def _persist(self) -> None:
        if self.state_path:
            self._write_state(self.state_path)

    # =========================================================================
    # ADAPTER INTERFACE
    # =========================================================================

    def connect(self) -> bool:
        self._connected = True
        logger.info("Connected to fake controller")
        return True

    def disconnect(self) -> None:
        self._connected = False
        logger.info("Disconnected from fake controller")

    def create(self, identity: ResourceIdentity, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create a remote object."""
        key = identity.key
        self._simulate_latency(50, 25)
        self._check_failures("create", key)

        with self._lock:
            if key in self._objects:
                raise AdapterError(f"Object already exists: {key}", identity=key)
            now = datetime.utcnow().isoformat()
            obj = {
                **attributes,
                "id": f"{identity.type}-{uuid.uuid4().hex[:10]}",
                "path": f"/infra/{identity.type}s/{identity.name}",
                "revision": 0,
                "created_at": now,
                "updated_at": now,
            }
            self._objects[key] = obj
            self._persist()
            logger.debug(f"Created object {key}: {obj['id']}")
            return dict(obj)

    def read(self, identity: ResourceIdentity, outputs: Dict[str, Any]) -> Dict[str, Any]:
        """Read a remote object."""
        key = identity.key
        self._simulate_latency(20, 10)
        self._check_failures("read", key)

        with self._lock:
            if key not in self._objects:
                raise ResourceNotFoundError(f"Object not found: {key}", identity=key)
            return dict(self._objects[key])

    def update(
        self,
        identity: ResourceIdentity,
        attributes: Dict[str, Any],
        outputs: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Replace the declared attributes of a remote object."""
        key = identity.key
        self._simulate_latency(40, 20)
        self._check_failures("update", key)

        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise ResourceNotFoundError(f"Object not found: {key}", identity=key)
            obj = {
                **attributes,
                "id": current["id"],
                "path": current["path"],
                "revision": current["revision"] + 1,
                "created_at": current["created_at"],
                "updated_at": datetime.utcnow().isoformat(),
            }
            self._objects[key] = obj
            self._persist()
            logger.debug(f"Updated object {key} to revision {obj['revision']}")
            return dict(obj)

    def delete(self, identity: ResourceIdentity, outputs: Dict[str, Any]) -> None:
        """Delete a remote object."""
        key = identity.key
        self._simulate_latency(30, 15)
        self._check_failures("delete", key)

        with self._lock:
            if key not in self._objects:
                raise ResourceNotFoundError(f"Object not found: {key}", identity=key)
            del self._objects[key]
            self._persist()
            logger.debug(f"Deleted object {key}")

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def get_object(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self._objects.get(key)
            return dict(obj) if obj is not None else None

    def calls(self, operation: Optional[str] = None) -> List[Dict[str, Any]]:
        """Recorded adapter calls, optionally filtered by operation."""
        with self._lock:
            return [c for c in self._calls if operation is None or c["operation"] == operation]

    def get_state(self) -> Dict[str, Any]:
        """Get current adapter state (for debugging/auditing)."""
        with self._lock:
            return {
                "connected": self._connected,
                "objects": sorted(self._objects),
                "calls": len(self._calls),
            }

    def reset(self) -> None:
        """Reset adapter state."""
        with self._lock:
            self._objects = {}
            self._calls = []
            self._permanent_failures = set()
            self._transient_failures = {}
            self._persist()
        logger.info("Fake controller reset")

    def export_state(self, path: Optional[str] = None) -> str:
        """Export current objects to a JSON file."""
        export_path = Path(path) if path else self.state_path
        if not export_path:
            export_path = Path("./fake_controller_state.json")

        with self._lock:
            self._write_state(export_path)

        logger.info(f"State exported to: {export_path}")
        return str(export_path)


# Register adapter with factory
AdapterFactory.register("fake", FakeControllerAdapter)
