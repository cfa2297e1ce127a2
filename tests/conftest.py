from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from infra_reconciler.adapters import AdapterRegistry, FakeControllerAdapter
from infra_reconciler.config import RetryPolicy, set_settings
from infra_reconciler.engine import DeclarationParser, Reconciler
from infra_reconciler.engine.executor import PlanExecutor
from infra_reconciler.state import InMemoryStateStore
from infra_reconciler.storage import StorageManager

SAMPLES_DIR = Path(__file__).resolve().parent.parent / "samples"

CHAIN_YAML = """
resources:
  tier1_gateway:
    gw:
      edge_cluster: edge-01
  segment:
    seg:
      connectivity_path: ${tier1_gateway.gw.path}
      subnet: 10.0.1.0/24
  virtual_machine:
    vm:
      network: ${segment.seg.path}
      cpu: 2
"""


@pytest.fixture(autouse=True)
def _reset_settings() -> Iterator[None]:
    set_settings(None)
    yield
    set_settings(None)


@pytest.fixture
def parser() -> DeclarationParser:
    return DeclarationParser()


@pytest.fixture
def chain_declaration(parser: DeclarationParser):
    return parser.parse(CHAIN_YAML)


@pytest.fixture
def sample_path() -> Path:
    return SAMPLES_DIR / "three_tier.yaml"


@pytest.fixture
def adapter() -> FakeControllerAdapter:
    return FakeControllerAdapter()


@pytest.fixture
def registry(adapter: FakeControllerAdapter) -> AdapterRegistry:
    return AdapterRegistry(default=adapter)


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def storage(tmp_path: Path) -> StorageManager:
    return StorageManager(str(tmp_path / "artifacts"))


@pytest.fixture
def no_delay_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delay_seconds=0.0)


@pytest.fixture
def reconciler(
    registry: AdapterRegistry,
    state_store: InMemoryStateStore,
    storage: StorageManager,
    no_delay_retry: RetryPolicy,
) -> Reconciler:
    return Reconciler(
        registry=registry,
        state_store=state_store,
        storage=storage,
        max_workers=4,
        retry_policy=no_delay_retry,
    )


@pytest.fixture
def executor(
    registry: AdapterRegistry,
    state_store: InMemoryStateStore,
    storage: StorageManager,
    no_delay_retry: RetryPolicy,
) -> PlanExecutor:
    return PlanExecutor(
        registry=registry,
        state_store=state_store,
        storage=storage,
        max_workers=4,
        retry_policy=no_delay_retry,
        sleep=lambda _: None,
    )


@pytest.fixture
def chain_yaml() -> str:
    return CHAIN_YAML
