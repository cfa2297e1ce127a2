"""
Infra Reconciler - Domain Models

Defines all Pydantic models for declarations, plans, state records,
resource results and API responses. These models form the core data
structures that flow through the entire system.
"""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional
import re
import uuid

from pydantic import BaseModel, ConfigDict, Field


# Reference marker: ${type.name.attribute[.nested]}
REFERENCE_PATTERN = re.compile(
    r"\$\{(?P<type>[A-Za-z0-9_\-]+)\.(?P<name>[A-Za-z0-9_\-]+)"
    r"\.(?P<attribute>[A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\}"
)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")


# =============================================================================
# ENUMS
# =============================================================================

class OperationType(str, Enum):
    """Kind of change applied to a remote resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ResourceStatus(str, Enum):
    """Outcome of a single resource within a run."""
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Overall status of a reconciliation run."""
    CREATED = "created"
    PLANNING = "planning"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# DECLARATION MODEL (YAML -> Domain Model)
# =============================================================================

class ResourceIdentity(BaseModel):
    """Identity of a resource: (type, name)."""
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Resource type (e.g., segment)")
    name: str = Field(..., description="Resource name, unique per type")

    @property
    def key(self) -> str:
        return f"{self.type}.{self.name}"

    @classmethod
    def parse(cls, key: str) -> "ResourceIdentity":
        """Parse a ``type.name`` key."""
        parts = key.split(".")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid resource identity: '{key}'")
        return cls(type=parts[0], name=parts[1])

    def __str__(self) -> str:
        return self.key


class Reference(BaseModel):
    """Pointer from an attribute to another resource's output attribute."""
    model_config = ConfigDict(frozen=True)

    target: ResourceIdentity
    attribute: str

    @property
    def marker(self) -> str:
        return f"${{{self.target.key}.{self.attribute}}}"


def find_references(value: Any) -> Iterator[Reference]:
    """Yield every reference embedded in an attribute value (recursively)."""
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            yield Reference(
                target=ResourceIdentity(type=match["type"], name=match["name"]),
                attribute=match["attribute"],
            )
    elif isinstance(value, dict):
        for item in value.values():
            yield from find_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from find_references(item)


class ResourceDeclaration(BaseModel):
    """A named, typed resource with its declared attributes."""
    type: str
    name: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(
        default_factory=list,
        description="Explicit dependencies as 'type.name' keys",
    )

    @property
    def identity(self) -> ResourceIdentity:
        return ResourceIdentity(type=self.type, name=self.name)

    @property
    def key(self) -> str:
        return self.identity.key

    def references(self) -> List[Reference]:
        """All references found in the attributes, in declaration order."""
        return list(find_references(self.attributes))

    def dependency_keys(self) -> List[str]:
        """Identity keys this resource depends on (references + depends_on)."""
        keys: List[str] = []
        for ref in self.references():
            if ref.target.key not in keys:
                keys.append(ref.target.key)
        for key in self.depends_on:
            if key not in keys:
                keys.append(key)
        return keys


class Declaration(BaseModel):
    """
    Complete declaration - desired state of the managed infrastructure.

    Parsed from YAML; drives graph building and planning.
    """
    resources: List[ResourceDeclaration] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)

    def by_key(self) -> Dict[str, ResourceDeclaration]:
        return {r.key: r for r in self.resources}

    def get(self, identity: ResourceIdentity) -> Optional[ResourceDeclaration]:
        return self.by_key().get(identity.key)


# =============================================================================
# STATE MODEL
# =============================================================================

class StateRecord(BaseModel):
    """Last-known remote state of one managed resource."""
    identity: ResourceIdentity
    declared: Dict[str, Any] = Field(
        default_factory=dict,
        description="Attributes as declared when last applied (references unresolved)",
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict,
        description="Remote-side attributes returned by the adapter",
    )
    dependencies: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def key(self) -> str:
        return self.identity.key


# =============================================================================
# PLAN MODELS
# =============================================================================

class Operation(BaseModel):
    """Single create/update/delete step of a plan."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    type: OperationType
    identity: ResourceIdentity
    attributes: Dict[str, Any] = Field(default_factory=dict)
    prior: Optional[StateRecord] = None
    dependencies: List[str] = Field(
        default_factory=list,
        description="Operation IDs that must succeed before this one",
    )
    resource_dependencies: List[str] = Field(default_factory=list)
    reason: str = ""
    changed_attributes: List[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.identity.key


class Plan(BaseModel):
    """Ordered set of operations derived from declared vs remembered state."""
    run_id: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    operations: List[Operation] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)
    destroy: bool = False

    @property
    def total_operations(self) -> int:
        return len(self.operations)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def counts(self) -> Dict[str, int]:
        counts = {op_type.value: 0 for op_type in OperationType}
        for op in self.operations:
            counts[op.type.value] += 1
        return counts

    def operation(self, op_id: str) -> Optional[Operation]:
        for op in self.operations:
            if op.id == op_id:
                return op
        return None

    def for_resource(self, key: str) -> Optional[Operation]:
        for op in self.operations:
            if op.key == key:
                return op
        return None


# =============================================================================
# EXECUTION MODELS
# =============================================================================

class ResourceResult(BaseModel):
    """Result of applying (or not applying) one resource."""
    resource: str
    operation: Optional[OperationType] = None
    operation_id: Optional[str] = None
    status: ResourceStatus
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    blocked_by: Optional[str] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)


class RunSummary(BaseModel):
    """Summary of a reconciliation run."""
    run_id: str
    status: RunStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    destroy: bool = False

    total_operations: int = 0
    applied: int = 0
    failed: int = 0
    blocked: int = 0
    unchanged: int = 0
    cancelled: int = 0

    error_message: Optional[str] = None
    results: List[ResourceResult] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)

    def result_for(self, key: str) -> Optional[ResourceResult]:
        for result in self.results:
            if result.resource == key:
                return result
        return None


# =============================================================================
# API MODELS
# =============================================================================

class RunCreateRequest(BaseModel):
    """Request to create a new reconciliation run."""
    declaration_yaml: str = Field(..., description="YAML declaration content")
    dry_run: bool = Field(default=False, description="Plan without applying")
    destroy: bool = Field(default=False, description="Delete every managed resource")
    refresh: bool = Field(default=False, description="Read remote state before planning")


class RunCreateResponse(BaseModel):
    """Response after creating a run."""
    run_id: str
    status: RunStatus
    message: str
    plan: Optional[Plan] = None


class RunStatusResponse(BaseModel):
    """Response for run status query."""
    run_id: str
    status: RunStatus
    progress_percent: float = 0.0
    current_resource: Optional[str] = None
    message: Optional[str] = None
    summary: Optional[RunSummary] = None


class ArtifactInfo(BaseModel):
    """Information about a stored run artifact."""
    name: str
    path: str
    type: str
    size_bytes: int
    created_at: datetime


class ArtifactsResponse(BaseModel):
    """Response containing list of artifacts."""
    run_id: str
    artifacts: List[ArtifactInfo] = Field(default_factory=list)


class StateResponse(BaseModel):
    """Current contents of the state store."""
    total: int
    records: List[StateRecord] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    run_id: Optional[str] = None
