"""
Infra Reconciler - Base Adapter Interface

Defines the abstract interface that all remote resource adapters must
implement, the adapter error taxonomy, and the registry that maps
resource types to adapters.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, TypeVar
import logging
import time

from infra_reconciler.config import RetryPolicy
from infra_reconciler.models import ResourceIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdapterError(Exception):
    """
    Exception raised by an adapter call.

    Isolated to the failing resource: dependents are blocked, independent
    branches continue.
    """

    def __init__(
        self,
        message: str,
        identity: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.identity = identity
        self.original_error = original_error
        super().__init__(self.message)


class TransientAdapterError(AdapterError):
    """Adapter failure that may succeed on retry (timeouts, throttling)."""


class ResourceNotFoundError(AdapterError):
    """The remote object does not exist."""


def call_with_retry(
    call: Callable[[], T],
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> T:
    """
    Invoke an adapter call, retrying TransientAdapterError with backoff.

    Args:
        call: Zero-argument adapter call
        policy: Attempt limit and delays
        description: Label used in log messages (usually the identity key)
        sleep: Sleep function used between attempts
        on_attempt: Called with the 1-indexed attempt number before each try

    Raises:
        TransientAdapterError: after the last attempt
        AdapterError: any other adapter error, without retrying
    """
    attempt = 0
    while True:
        attempt += 1
        if on_attempt:
            on_attempt(attempt)
        try:
            return call()
        except TransientAdapterError as e:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for_attempt(attempt)
            logger.warning(
                f"Transient error on {description} (attempt {attempt}/"
                f"{policy.max_attempts}), retrying in {delay:.2f}s: {e.message}"
            )
            sleep(delay)


class ResourceAdapter(ABC):
    """
    Abstract base class for remote resource adapters.

    An adapter is the capability set for one or more resource types.
    ``outputs`` arguments carry the last-known remote attributes of the
    resource (for example its remote id) as returned by a previous call.
    """

    ADAPTER_NAME: str = "base"

    def connect(self) -> bool:
        """Establish connection to the remote platform."""
        return True

    def disconnect(self) -> None:
        """Close connection to the remote platform."""

    @abstractmethod
    def create(self, identity: ResourceIdentity, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a remote object.

        Args:
            identity: Resource identity
            attributes: Declared attributes with references resolved

        Returns:
            Remote-side attributes (outputs)

        Raises:
            AdapterError: on failure
        """

    @abstractmethod
    def read(self, identity: ResourceIdentity, outputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Read the current remote attributes.

        Raises:
            ResourceNotFoundError: if the object no longer exists
        """

    @abstractmethod
    def update(
        self,
        identity: ResourceIdentity,
        attributes: Dict[str, Any],
        outputs: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Update a remote object in place and return its new outputs."""

    @abstractmethod
    def delete(self, identity: ResourceIdentity, outputs: Dict[str, Any]) -> None:
        """
        Delete a remote object.

        Raises:
            ResourceNotFoundError: if the object is already gone
        """


class AdapterRegistry:
    """
    Maps resource types to adapters.

    Usage:
        registry = AdapterRegistry(default=FakeControllerAdapter())
        registry.register("virtual_machine", vm_adapter)
        adapter = registry.get("segment")
    """

    def __init__(self, default: Optional[ResourceAdapter] = None):
        self._adapters: Dict[str, ResourceAdapter] = {}
        self._default = default

    def register(self, resource_type: str, adapter: ResourceAdapter) -> None:
        """Register the adapter for a resource type."""
        self._adapters[resource_type] = adapter
        logger.debug(f"Registered adapter {adapter.ADAPTER_NAME} for type: {resource_type}")

    def set_default(self, adapter: ResourceAdapter) -> None:
        self._default = adapter

    def get(self, resource_type: str) -> ResourceAdapter:
        """
        Get the adapter for a resource type.

        Raises:
            AdapterError: if no adapter handles the type
        """
        adapter = self._adapters.get(resource_type, self._default)
        if adapter is None:
            raise AdapterError(f"No adapter registered for resource type: {resource_type}")
        return adapter

    def types(self) -> List[str]:
        return sorted(self._adapters)

    def adapters(self) -> List[ResourceAdapter]:
        """Distinct adapters, default included."""
        seen: List[ResourceAdapter] = []
        for adapter in list(self._adapters.values()) + [self._default]:
            if adapter is not None and all(adapter is not s for s in seen):
                seen.append(adapter)
        return seen

    def connect_all(self) -> None:
        for adapter in self.adapters():
            adapter.connect()

    def disconnect_all(self) -> None:
        for adapter in self.adapters():
            try:
                adapter.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting adapter {adapter.ADAPTER_NAME}: {e}")


class AdapterFactory:
    """
    Factory for creating adapter backends by name.

    Usage:
        adapter = AdapterFactory.create("fake", simulate_latency=False)
    """

    _adapters: Dict[str, type] = {}

    @classmethod
    def register(cls, adapter_type: str, adapter_class: type) -> None:
        """Register an adapter backend."""
        cls._adapters[adapter_type] = adapter_class

    @classmethod
    def create(cls, adapter_type: str, **kwargs: Any) -> ResourceAdapter:
        """
        Create an adapter instance.

        Raises:
            ValueError: If adapter type is not registered
        """
        if adapter_type not in cls._adapters:
            raise ValueError(
                f"Unknown adapter type: {adapter_type}. "
                f"Available: {list(cls._adapters.keys())}"
            )
        return cls._adapters[adapter_type](**kwargs)

    @classmethod
    def available_adapters(cls) -> List[str]:
        """Get list of available adapter types."""
        return list(cls._adapters.keys())
