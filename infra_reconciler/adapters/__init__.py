"""
Infra Reconciler - Adapters Package

Provides the adapter interface and implementations for remote platforms.
The adapter pattern allows swapping between the fake controller and real
SDN/virtualization backends.
"""

from infra_reconciler.adapters.base import (
    AdapterError,
    AdapterFactory,
    AdapterRegistry,
    ResourceAdapter,
    ResourceNotFoundError,
    TransientAdapterError,
)
from infra_reconciler.adapters.fake_controller import FakeControllerAdapter

__all__ = [
    "AdapterError",
    "AdapterFactory",
    "AdapterRegistry",
    "ResourceAdapter",
    "ResourceNotFoundError",
    "TransientAdapterError",
    "FakeControllerAdapter",
]
